"""Hold Vault Meta information.
   Hold Vault encrypts, signs and verifies hold records on the client
   before they reach an untrusted document store.
"""
__title__ = 'hold_vault'
__description__ = (
   'Zero-knowledge, tamper-evident record store for holds: '
   'client-side encryption and signing.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2026 Hold Vault contributors'
__author__ = 'Hold Vault contributors'
__license__ = 'Apache-2.0'
