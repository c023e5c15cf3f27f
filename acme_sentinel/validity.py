"""
Module evaluating the persisted certificate bundle
"""
import logging
import math
from datetime import datetime, timezone
from enum import Enum

from acme_sentinel.account import AccountRecord
from acme_sentinel.x509 import Certificate, PrivateKeyLoader

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class ValidityParseError(Exception):
    """Malformed or missing stored artifact"""


class FieldStatus(Enum):
    """Outcome of parsing one bundle component"""
    OK = 'ok'
    ERROR = 'error'


class BundlePaths:
    """Location of every component of the bundle"""
    def __init__(self, *, server_key, account_key, chain, account):
        self.server_key = server_key
        self.account_key = account_key
        self.chain = chain
        self.account = account


class FieldReport:
    """Result of parsing one component: derived attributes or the error"""
    def __init__(self, status, attributes=None, error=None, value=None):
        self.status = status
        self.attributes = attributes or {}
        self.error = error
        self.value = value

    @classmethod
    def ok(cls, value, attributes):
        return cls(FieldStatus.OK, attributes=attributes, value=value)

    @classmethod
    def failed(cls, error):
        return cls(FieldStatus.ERROR, error=error)

    @property
    def is_ok(self):
        return self.status is FieldStatus.OK

    def report(self):
        if self.is_ok:
            return dict(self.attributes)
        return {'error': str(self.error)}


def truncate_days(days):
    """Truncates days to one decimal, towards zero"""
    return math.trunc(days * 10) / 10


class ValidityVerdict:
    """Snapshot of the bundle state, never cached across checks"""
    def __init__(self, *, server_key, account_key, chain, account, now):
        self.server_key = server_key
        self.account_key = account_key
        self.chain = chain
        self.account = account
        self.now = now

    @property
    def fields(self):
        return {
            'server_key': self.server_key,
            'account_key': self.account_key,
            'chain': self.chain,
            'account': self.account,
        }

    @property
    def errors(self):
        """Field name -> error for every component that failed to parse"""
        return {name: field.error for name, field in self.fields.items() if not field.is_ok}

    @property
    def in_window(self):
        """True if the certificate is valid right now (not_before <= now <= not_after)"""
        if not self.chain.is_ok:
            return False
        return self.chain.value.valid_at(self.now)

    @property
    def days_remaining(self):
        """Fractional days till the certificate expires, None if the chain couldn't be parsed"""
        if not self.chain.is_ok:
            return None
        return self.chain.value.days_remaining(self.now)

    def is_ok(self, renew_days):
        """True if every component is fine, the certificate is in its window and far enough from expiration"""
        if self.errors or not self.in_window:
            return False
        return self.days_remaining > renew_days

    def report(self):
        """Structured diagnostic report"""
        ret = {name: field.report() for name, field in self.fields.items()}
        days_remaining = self.days_remaining
        ret['days_remaining'] = None if days_remaining is None else truncate_days(days_remaining)
        return ret


class ValidityEvaluator:
    """Parses every bundle component independently and computes a ValidityVerdict"""
    def __init__(self, paths):
        self.paths = paths

    def evaluate(self, paths=None, now=None):
        """Never raises because of a broken component, the error is reported on its field instead"""
        if paths is None:
            paths = self.paths
        if now is None:
            now = datetime.now(timezone.utc)

        verdict = ValidityVerdict(
            server_key=self._evaluate_field(self._parse_key, paths.server_key),
            account_key=self._evaluate_field(self._parse_key, paths.account_key),
            chain=self._evaluate_field(self._parse_chain, paths.chain),
            account=self._evaluate_field(self._parse_account, paths.account),
            now=now,
        )
        for name, error in verdict.errors.items():
            logger.debug("Bundle component %s: %s", name, error)

        return verdict

    @staticmethod
    def _evaluate_field(parser, path):
        try:
            value, attributes = parser(path)
        except ValidityParseError as parse_error:
            return FieldReport.failed(parse_error)
        return FieldReport.ok(value, attributes)

    @staticmethod
    def _parse_key(path):
        try:
            key = PrivateKeyLoader.load(path)
        except Exception as key_error:  # pylint: disable=broad-except
            raise ValidityParseError('Unable to load key {}: {}'.format(path, key_error)) from key_error
        return key, key.describe()

    @staticmethod
    def _parse_chain(path):
        try:
            bundle = Certificate.load(path)
            attributes = {
                'subject': bundle.common_name,
                'issuer': bundle.issuer,
                'algorithm': bundle.signature_hash,
                'not_before': bundle.not_before,
                'not_after': bundle.not_after,
                'chain_length': len(bundle.chain),
            }
        except Exception as chain_error:  # pylint: disable=broad-except
            raise ValidityParseError('Unable to load certificate {}: {}'.format(path, chain_error)) from chain_error
        return bundle, attributes

    @staticmethod
    def _parse_account(path):
        try:
            account = AccountRecord.load(path)
        except Exception as account_error:  # pylint: disable=broad-except
            raise ValidityParseError('Unable to load account {}: {}'.format(path, account_error)) from account_error
        return account, {
            'contact': account.contact[0],
            'created_at': account.created_at,
            'status': account.status,
            'initial_ip': account.initial_ip,
        }
