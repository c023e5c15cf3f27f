"""
Module containing ACME account registration handling
"""
import json
import logging
import os
from datetime import datetime, timezone

import josepy as jose
from acme import messages

from acme_sentinel.acme_requests import ACMEError
from acme_sentinel.x509 import atomic_write

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class RegistrationError(Exception):
    """Unable to register or load the ACME account"""


class AccountRecord:
    """Identity of the ACME account as persisted on disk"""
    def __init__(self, *, contact, created_at, status, uri, initial_ip=None, regr=None):
        self.contact = list(contact)
        self.created_at = created_at
        self.status = status
        self.uri = uri
        self.initial_ip = initial_ip
        self.regr = regr

    @classmethod
    def from_registration(cls, regr, created_at=None):
        """Builds the record from a freshly created acme.messages.RegistrationResource"""
        if created_at is None:
            created_at = datetime.now(timezone.utc)
        return cls(contact=regr.body.contact, created_at=created_at, status=regr.body.status,
                   uri=regr.uri, regr=regr)

    @classmethod
    def from_json(cls, data):
        """Builds the record from its JSON representation"""
        regr = None
        if data.get('regr') is not None:
            regr = messages.RegistrationResource.from_json(data['regr'])
        created_at = datetime.fromisoformat(data['createdAt'])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        if not data['contact']:
            raise ValueError('Account without contact information')
        return cls(contact=data['contact'], created_at=created_at, status=data['status'],
                   uri=data.get('uri'), initial_ip=data.get('initialIp'), regr=regr)

    def to_json(self):
        """Returns the JSON serializable representation of the record"""
        return {
            'contact': self.contact,
            'createdAt': self.created_at.isoformat(),
            'status': self.status,
            'uri': self.uri,
            'initialIp': self.initial_ip,
            'regr': self.regr.to_json() if self.regr is not None else None,
        }

    @classmethod
    def load(cls, path):
        """Loads the record stored on path"""
        with open(path, 'r', encoding='ascii') as account_file:
            return cls.from_json(json.load(account_file))

    def save(self, path):
        """Atomically persists the record on path"""
        atomic_write(path, json.dumps(self.to_json(), indent=2).encode('ascii'))


class AccountRegistrar:
    """Loads the ACME account from disk or registers a new one"""
    def __init__(self, authority):
        self.authority = authority

    def load_or_create(self, account_path, account_key, contact):
        """
        Returns the AccountRecord stored on account_path. If it doesn't exist a new account
        bound to account_key is registered and persisted, but only after the ACME directory
        accepted it
        """
        if os.path.exists(account_path):
            logger.info("Loading ACME account from %s", account_path)
            try:
                return AccountRecord.load(account_path)
            except (OSError, ValueError, KeyError, TypeError, jose.DeserializationError) as load_error:
                raise RegistrationError('Unable to load ACME account from {}'.format(account_path)) from load_error

        logger.info("Registering new ACME account for %s", contact)
        try:
            regr = self.authority.create_account(account_key, contact)
        except ACMEError as account_error:
            raise RegistrationError('Unable to register ACME account') from account_error

        record = AccountRecord.from_registration(regr)
        try:
            directory = os.path.dirname(account_path)
            if directory:
                os.makedirs(directory, mode=0o750, exist_ok=True)
            record.save(account_path)
        except OSError as save_error:
            raise RegistrationError('Unable to persist ACME account on {}'.format(account_path)) from save_error

        logger.info("ACME account %s created", record.uri)
        return record
