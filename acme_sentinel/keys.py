"""
Module handling the account and server private keys
"""
import logging
import os
import threading
from enum import Enum

from cryptography.hazmat.primitives.asymmetric import ec

from acme_sentinel.x509 import ECPrivateKey, PrivateKeyLoader, RSAPrivateKey, X509Error

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class KeyMaterialError(Exception):
    """Unable to load, generate or persist a private key"""


class KeyKind(Enum):
    """Roles a private key can play"""
    ACCOUNT = 'account'
    SERVER = 'server'


KEY_TYPES = {
    KeyKind.ACCOUNT: {
        'class': ECPrivateKey,
        'params': {
            'curve': ec.SECP256R1,
        }
    },
    KeyKind.SERVER: {
        'class': RSAPrivateKey,
        'params': {
            'size': 2048,
        }
    },
}


class KeyMaterialStore:
    """
    Loads private keys from disk or generates them the first time they are needed.
    Once a key file exists it is always loaded, never regenerated.
    """
    def __init__(self):
        self._keys = {}
        self._lock = threading.Lock()

    def load_or_create(self, kind, path):
        """Returns the key stored on path, creating a new one of the family matching kind if path doesn't exist"""
        path = os.path.abspath(path)
        with self._lock:
            cached = self._keys.get(path)
            if cached is not None and os.path.exists(path):
                return cached

            if os.path.exists(path):
                key = self._load(kind, path)
            else:
                key = self._create(kind, path)

            self._keys[path] = key
            return key

    @staticmethod
    def _load(kind, path):
        logger.info("Loading %s key from %s", kind.value, path)
        try:
            return PrivateKeyLoader.load(path)
        except (OSError, X509Error) as load_error:
            raise KeyMaterialError('Unable to load {} key from {}'.format(kind.value, path)) from load_error

    @staticmethod
    def _create(kind, path):
        logger.info("Generating new %s key on %s", kind.value, path)
        key_type_details = KEY_TYPES[kind]
        key = key_type_details['class']()
        try:
            key.generate(**key_type_details['params'])
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, mode=0o750, exist_ok=True)
            key.save(path)
        except (OSError, ValueError) as create_error:
            raise KeyMaterialError('Unable to create {} key on {}'.format(kind.value, path)) from create_error

        return key
