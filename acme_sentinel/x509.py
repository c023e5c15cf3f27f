"""
Module containing x509 helper classes
"""
import abc
import ipaddress
import os
import stat
import uuid
from datetime import datetime, timezone

from cryptography import x509 as crypto_x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

DEFAULT_RSA_KEY_SIZE = 2048
DEFAULT_RSA_PUBLIC_EXPONENT = 65537
DEFAULT_SIGNATURE_ALGORITHM = hashes.SHA256()
DEFAULT_EC_CURVE = ec.SECP256R1  # pylint: disable=invalid-name
OPENER_MODE = 0o640
PEM_HEADER = b'-----BEGIN CERTIFICATE-----'
PEM_HEADER_AND_FOOTER_LEN = 52


class X509Error(Exception):
    """Base exception class for the X509 module"""


def secure_opener(path, flags):
    """
    custom opener to be used with open(file, mode, opener=secure_opener).
    Ensures that newly created files are created with OPENER_MODE permissions
    """
    return os.open(path, flags, OPENER_MODE)


def atomic_write(path, data, opener=secure_opener):
    """
    Writes data to a temporary file in the same directory and renames it over path,
    readers either get the previous content or the new one
    """
    tmp_path = '{}.{}.tmp'.format(path, uuid.uuid4().hex)
    try:
        with open(tmp_path, 'wb', opener=opener) as tmp_file:
            tmp_file.write(data)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        os.replace(tmp_path, path)
    except OSError:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


class PrivateKeyLoader():
    """PrivateKey factory that reads an existing key from disk"""
    @staticmethod
    def load(filename):
        """
        Loads a private key from disk after checking that permissions
        only allow access to the owner of the file
        """
        key_stat = os.stat(filename)
        if key_stat.st_mode & (stat.S_IWGRP | stat.S_IXGRP | stat.S_IRWXO):
            raise X509Error(f"permissions ({stat.S_IMODE(key_stat.st_mode):o}) are too open for {filename}")

        with open(filename, 'rb') as key_file:
            return PrivateKeyLoader.loads(key_file.read())

    @staticmethod
    def loads(pem):
        """Decodes a PEM encoded private key"""
        try:
            private_key = serialization.load_pem_private_key(pem, password=None)
        except (TypeError, ValueError) as load_pem_error:
            raise X509Error('Unable to parse private key PEM') from load_pem_error

        if isinstance(private_key, rsa.RSAPrivateKey):
            return RSAPrivateKey(private_key=private_key)
        if isinstance(private_key, ec.EllipticCurvePrivateKey):
            return ECPrivateKey(private_key=private_key)
        raise X509Error("Unsupported private key type")


class PrivateKey(abc.ABC):
    """
    Base class that handles PrivateKeys. It already implements:
        - save()
        - describe()
    And subclasses are required to implement:
        - generate(self, **kwargs)
        - key_type
    """
    key_type = None

    def __init__(self, private_key=None):
        self.key = private_key

    @abc.abstractmethod
    def generate(self, **kwargs):
        """Generates a new private key"""

    @property
    def public_pem(self):
        """Returns the PEM of the public key"""
        return self.key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    @property
    def private_pem(self):
        """Return the PEM of the private key"""
        return self.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def describe(self):
        """Returns the public attributes of the key"""
        return {'type': self.key_type}

    def save(self, filename):
        """Persists the private key on disk"""
        atomic_write(filename, self.private_pem)

    def __eq__(self, other):
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return self.private_pem == other.private_pem

    def __hash__(self):
        return hash(self.public_pem)


class RSAPrivateKey(PrivateKey):
    """RSA Private Key implementation"""
    key_type = 'RSA'

    def generate(self, **kwargs):
        """
        Generates a new RSA private key
        Supported parameters:
            - size <int> default value: DEFAULT_RSA_KEY_SIZE
        """
        size = kwargs.get('size', DEFAULT_RSA_KEY_SIZE)

        self.key = rsa.generate_private_key(
            public_exponent=DEFAULT_RSA_PUBLIC_EXPONENT,
            key_size=size,
        )

    def describe(self):
        ret = super().describe()
        ret['size'] = self.key.key_size
        return ret


class ECPrivateKey(PrivateKey):
    """Elliptic Curve Private Key implementation"""
    key_type = 'EC'

    def generate(self, **kwargs):
        """
        Generates a new elliptic curve private key
        Supported parameters
            - curve <instance of cryptography.hazmat.primitives.asymmetric.ec.EllipticCurve>
              default value: DEFAULT_EC_CURVE
        """
        curve = kwargs.get('curve', DEFAULT_EC_CURVE)

        self.key = ec.generate_private_key(curve=curve())

    def describe(self):
        ret = super().describe()
        ret['curve'] = self.key.curve.name
        return ret


class BaseX509Builder():
    """
    Base class for CSR and SelfSignedCertificate classes. It centralizes common stuff:
        - common name
        - SANs
        - sign() method and pem property
    """
    def __init__(self, builder, private_key, common_name, sans):
        if not isinstance(private_key, PrivateKey):
            raise TypeError("private_key must be either a RSAPrivateKey or ECPrivateKey instance")
        if not isinstance(sans, (list, tuple)):
            raise TypeError("SANs must be a tuple or a list")

        self.private_key = private_key
        # a subject without CN is valid, the identities live in the SANs
        name_attributes = []
        if common_name is not None:
            name_attributes.append(crypto_x509.NameAttribute(NameOID.COMMON_NAME, common_name))
        self.common_name = crypto_x509.Name(name_attributes)

        self._builder = builder.subject_name(self.common_name)

        self.append_sans(sans)

    def append_sans(self, sans):
        """
        Adds the SubjectAlternativeNames with the following rules:
            - strings are added as DNS Names
            - IPv(4|6)Address instances are added as IPAddress Names
        """
        x509_names = []
        for san in sans:
            if isinstance(san, str):
                x509_names.append(crypto_x509.DNSName(san))
            elif isinstance(san, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
                x509_names.append(crypto_x509.IPAddress(san))
        if x509_names:
            self._builder = self._builder.add_extension(crypto_x509.SubjectAlternativeName(x509_names),
                                                        critical=False)

    def sign(self):
        """Signs the element being built with self.private_key using the DEFAULT_SIGNATURE algorithm"""
        return self._builder.sign(
            private_key=self.private_key.key,
            algorithm=DEFAULT_SIGNATURE_ALGORITHM,
        )

    @property
    def pem(self):
        """Returns the X.509 object serialized as a PEM"""
        return self.sign().public_bytes(encoding=serialization.Encoding.PEM)


class CertificateSigningRequest(BaseX509Builder):
    """Certificate Signing Request (CSR) generator"""
    def __init__(self, private_key, common_name, sans):
        super().__init__(crypto_x509.CertificateSigningRequestBuilder(), private_key, common_name, sans)

    @property
    def request(self):
        """Signed CSR"""
        return self.sign()


class SelfSignedCertificate(BaseX509Builder):
    """Self Signed Certificate generator"""
    def __init__(self, private_key, common_name, sans, from_date, until_date, issuer_name=None):
        super().__init__(crypto_x509.CertificateBuilder(), private_key, common_name, sans)

        if not (isinstance(from_date, datetime) and isinstance(until_date, datetime)):
            raise TypeError("from_date/until_date parameters must be datetime.datetime instances")

        if issuer_name is None:
            issuer = self.common_name
        else:
            issuer = crypto_x509.Name([crypto_x509.NameAttribute(NameOID.COMMON_NAME, issuer_name)])

        self._builder = self._builder.issuer_name(issuer)
        self._builder = self._builder.public_key(self.private_key.key.public_key())
        self._builder = self._builder.serial_number(crypto_x509.random_serial_number())
        self._builder = self._builder.not_valid_before(from_date)
        self._builder = self._builder.not_valid_after(until_date)

    @property
    def certificate(self):
        """self signed certificate"""
        return self.sign()


class Certificate:
    """X.509 certificate"""
    def __init__(self, pem, parse_chain=True):
        try:
            self.certificate = crypto_x509.load_pem_x509_certificate(pem)
        except (TypeError, ValueError) as load_pem_error:
            raise X509Error('Unable to parse PEM') from load_pem_error

        self.chain = [self]
        if parse_chain:
            self._parse_chain_pem(pem[pem.index(PEM_HEADER) + len(self.pem):].lstrip())

    def _parse_chain_pem(self, pem):
        len_pem = len(pem)
        if len_pem <= PEM_HEADER_AND_FOOTER_LEN or PEM_HEADER not in pem:
            return

        self.chain.append(Certificate(pem, parse_chain=False))
        len_last_pem = len(self.chain[-1].pem)
        if len_pem - len_last_pem > PEM_HEADER_AND_FOOTER_LEN:
            self._parse_chain_pem(pem[len_last_pem:].lstrip())

    @staticmethod
    def load(path):
        """Loads the certificate from a PEM on disk"""
        with open(path, 'rb') as pem_file:
            return Certificate(pem_file.read())

    @staticmethod
    def from_parts(cert_pem, chain_pem):
        """Builds a bundle from the leaf certificate PEM and its chain PEM, both required"""
        if isinstance(cert_pem, str):
            cert_pem = cert_pem.encode('ascii')
        if isinstance(chain_pem, str):
            chain_pem = chain_pem.encode('ascii')
        if not cert_pem or not chain_pem:
            raise X509Error('Both the certificate and its chain are required')

        return Certificate(cert_pem.strip() + b'\n' + chain_pem.strip() + b'\n')

    @property
    def pem(self):
        """Returns the certificate serialized as a PEM"""
        return self.certificate.public_bytes(encoding=serialization.Encoding.PEM)

    @property
    def common_name(self):
        """Gets the Common Name (CN) of this certificate, None if its subject doesn't carry one"""
        name_attrs = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if not name_attrs:
            return None
        if len(name_attrs) > 1:
            raise X509Error('Unexpected number of common name attributes')

        return name_attrs[0].value

    @property
    def issuer(self):
        """Gets the issuer distinguished name as an RFC4514 string"""
        return self.certificate.issuer.rfc4514_string()

    @property
    def not_before(self):
        """Start of the validity window as an aware UTC datetime"""
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self):
        """End of the validity window as an aware UTC datetime"""
        return self.certificate.not_valid_after_utc

    @property
    def signature_hash(self):
        """Name of the hash algorithm used to sign the certificate, None if it doesn't use one"""
        algorithm = self.certificate.signature_hash_algorithm
        if algorithm is None:
            return None
        return algorithm.name

    @property
    def subject_alternative_names(self):
        """Gets the subject alternative names in this certificate, as a list of strings"""
        try:
            san_ext = self.certificate.extensions.get_extension_for_class(crypto_x509.SubjectAlternativeName)
        except crypto_x509.ExtensionNotFound:  # no SANs
            return []
        return [str(v.value) for v in san_ext.value]

    def valid_at(self, now=None):
        """Returns True if now lies inside [not_before, not_after]"""
        if now is None:
            now = datetime.now(timezone.utc)
        return self.not_before <= now <= self.not_after

    def days_remaining(self, now=None):
        """Fractional number of days until not_after, negative once expired"""
        if now is None:
            now = datetime.now(timezone.utc)
        return (self.not_after - now).total_seconds() / 86400

    def save(self, path):
        """Atomically persists the certificate followed by its chain on disk serialized as a PEM"""
        atomic_write(path, b''.join(cert.pem for cert in self.chain), opener=None)
