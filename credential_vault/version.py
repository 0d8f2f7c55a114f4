"""Credential Vault Meta information.
   Credential Vault stores third-party integration secrets encrypted at rest,
   scoped to the tenant that owns them.
"""
__title__ = 'credential_vault'
__description__ = (
   'Credential Vault stores third-party integration secrets '
   'encrypted at rest, scoped to the tenant that owns them.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
