"""
Module containing the ACMEv2 issuance authority client
"""
import logging
import os
from collections import namedtuple
from enum import Enum
from urllib.parse import urlunparse

import josepy as jose
import requests
from acme import challenges, client, errors, messages

from acme_sentinel.x509 import Certificate, ECPrivateKey, X509Error

DIRECTORY_URL = 'https://acme-v02.api.letsencrypt.org/directory'
STAGING_DIRECTORY_URL = 'https://acme-staging-v02.api.letsencrypt.org/directory'
TLS_VERIFY = True   # intended to be used during testing
HTTP_VALIDATOR_PROXIES = {
    'http': os.getenv('HTTP_PROXY'),
    'https': os.getenv('HTTPS_PROXY'),
}
DEFAULT_USER_AGENT = 'acme-sentinel'
DEFAULT_HTTP01_VALIDATION_TIMEOUT = 2.0
DEFAULT_NETWORK_TIMEOUT = 45

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

IssuedCertificate = namedtuple('IssuedCertificate', ['cert', 'chain'])


class ACMEError(Exception):
    """Base error class"""


class ACMETransportError(ACMEError):
    """Error related to ACME transport protocol (HTTPS)"""


class ACMEInvalidChallengeError(ACMEError):
    """Challenge(s) have been marked as INVALID"""


class ACMEChallengeType(Enum):
    """ACMEv2 challenge types supported"""
    HTTP01 = 'http-01'


class ACMEChallengeValidation(Enum):
    """Possible results of challenge validation"""
    VALID = 1
    INVALID = 2
    UNKNOWN = 3


class ACMENotification(Enum):
    """Events reported through the notify hook"""
    CHALLENGE_CREATED = 'challenge_created'
    CHALLENGE_STATUS = 'challenge_status'
    CERTIFICATE_STATUS = 'certificate_status'


class HTTP01ACMEChallenge:
    """Class representing http-01 challenge"""
    def __init__(self, hostname, path, token, validation):
        self.challenge_type = ACMEChallengeType.HTTP01
        self.hostname = hostname
        self.path = path
        self.token = token
        self.validation = validation

    def validate(self, **kwargs):
        """Fetches the challenge the same way the ACME directory will. Returns a member of ACMEChallengeValidation"""
        logger.debug("Attempting to validate challenge %s", self)
        timeout = kwargs.get('timeout', DEFAULT_HTTP01_VALIDATION_TIMEOUT)
        port = kwargs.get('port', 80)

        url = urlunparse((
            'http',
            "{}:{}".format(self.hostname, port),
            self.path,
            '',
            '',
            ''))
        try:
            response = requests.get(url, proxies=HTTP_VALIDATOR_PROXIES, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout:
            return ACMEChallengeValidation.UNKNOWN
        except requests.exceptions.ConnectionError:
            return ACMEChallengeValidation.UNKNOWN
        except (requests.exceptions.HTTPError, requests.exceptions.TooManyRedirects):
            return ACMEChallengeValidation.INVALID

        if response.text == self.validation:
            return ACMEChallengeValidation.VALID

        return ACMEChallengeValidation.INVALID

    def to_message(self):
        """Notification payload carrying the proof value"""
        return {
            'altname': self.hostname,
            'challenge': {
                'type': self.challenge_type.value,
                'token': self.token,
                'keyAuthorization': self.validation,
            },
        }

    def __str__(self):
        return 'Challenge type: {}. http://{}{}: {}'.format(self.challenge_type, self.hostname, self.path,
                                                           self.validation)


def get_jwk(private_key):
    """Returns the JOSE JWK wrapping private_key and the signature algorithm to be used with it"""
    if isinstance(private_key, ECPrivateKey):
        return jose.JWKEC(key=private_key.key), jose.ES256
    return jose.JWKRSA(key=private_key.key), jose.RS256


class ACMEAuthority:
    """
    Thin layer over acme.client.ClientV2 exposing the operations needed to get a certificate:
        - init(directory_url)
        - create_account()
        - create_certificate()
    Challenge lifecycle events are reported through notify(event, message)
    """
    def __init__(self, *, directory_url=DIRECTORY_URL, user_agent=DEFAULT_USER_AGENT, notify=None,
                 prevalidate=True, verify_ssl=None, validation_port=80):
        self.directory_url = directory_url
        self.user_agent = user_agent
        self.notify = notify
        self.prevalidate = prevalidate
        self.verify_ssl = TLS_VERIFY if verify_ssl is None else verify_ssl
        self.validation_port = validation_port
        self.directory = None

    def _notify(self, event, message):
        if self.notify is None:
            return
        self.notify(event.value, message)

    def init(self, directory_url=None):
        """Fetches the directory resources"""
        if directory_url is not None:
            self.directory_url = directory_url
        logger.debug("Fetching ACME directory %s", self.directory_url)
        try:
            response = requests.get(self.directory_url, headers={'User-Agent': self.user_agent},
                                    verify=self.verify_ssl, timeout=DEFAULT_NETWORK_TIMEOUT)
            response.raise_for_status()
            self.directory = messages.Directory.from_json(response.json())
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to fetch directory URLs') from request_error
        except (jose.DeserializationError, ValueError) as dir_error:
            raise ACMEError('Unable to parse directory URLs') from dir_error

        return self.directory

    def _get_client(self, account_key, regr=None):
        if self.directory is None:
            self.init()
        jwk, alg = get_jwk(account_key)
        net = client.ClientNetwork(key=jwk, account=regr, alg=alg, verify_ssl=self.verify_ssl,
                                   user_agent=self.user_agent)
        return client.ClientV2(self.directory, net)

    def create_account(self, account_key, contact):
        """Registers a new account agreeing to the terms of service. Returns a RegistrationResource"""
        new_reg = messages.NewRegistration.from_data(email=contact, terms_of_service_agreed=True)
        acme = self._get_client(account_key)
        try:
            regr = acme.new_account(new_reg)
        except errors.Error as account_error:
            raise ACMEError('Unable to create ACME account') from account_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to create ACME account') from request_error

        return messages.RegistrationResource(body=regr.body, uri=regr.uri)

    def _get_challenges_from_order(self, order, jwk):
        ret = []
        for auth in order.authorizations:
            if auth.body.status == messages.STATUS_VALID:
                logger.debug("Authorization for %s is already valid", auth.body.identifier.value)
                continue
            for challb in auth.body.challenges:
                if isinstance(challb.chall, challenges.HTTP01):
                    response, validation = challb.response_and_validation(jwk)
                    ret.append((challb, response, HTTP01ACMEChallenge(
                        hostname=auth.body.identifier.value,
                        path=challb.path,
                        token=challb.chall.encode('token'),
                        validation=validation,
                    )))
                    break
            else:
                raise ACMEError('No http-01 challenge offered for {}'.format(auth.body.identifier.value))

        return ret

    def create_certificate(self, *, account, account_key, csr, domains, deadline):
        """
        Requests a certificate for domains using the http-01 challenge.
        Returns an IssuedCertificate or None if the ACME directory didn't provide both the
        certificate and its chain
        """
        acme = self._get_client(account_key, account.regr)
        jwk, _ = get_jwk(account_key)
        try:
            order = acme.new_order(csr)
            pending = self._get_challenges_from_order(order, jwk)
            for challb, response, challenge in pending:
                self._notify(ACMENotification.CHALLENGE_CREATED, challenge.to_message())
                if self.prevalidate:
                    self._prevalidate(challenge)
                acme.answer_challenge(challb, response)
                self._notify(ACMENotification.CHALLENGE_STATUS, {'altname': challenge.hostname,
                                                                 'status': 'answered'})
            finalized = acme.poll_and_finalize(order, deadline=deadline)
        except errors.ValidationError as validation_error:
            logger.error("ACME directory has rejected the challenge(s) for %s", domains)
            raise ACMEInvalidChallengeError('Unable to get certificate') from validation_error
        except errors.Error as order_error:
            raise ACMEError('Unable to get certificate') from order_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to get certificate') from request_error

        self._notify(ACMENotification.CERTIFICATE_STATUS, {'domains': domains, 'status': 'issued'})
        if not finalized.fullchain_pem:
            return None

        try:
            bundle = Certificate(finalized.fullchain_pem.encode('ascii'))
        except X509Error as certificate_error:
            raise ACMEError('Received invalid PEM from ACME server') from certificate_error

        if len(bundle.chain) < 2:
            logger.warning("ACME directory returned a certificate without chain for %s", domains)
            return None

        return IssuedCertificate(
            cert=bundle.pem.decode('ascii'),
            chain=b''.join(cert.pem for cert in bundle.chain[1:]).decode('ascii'),
        )

    def _prevalidate(self, challenge):
        result = challenge.validate(port=self.validation_port)
        if result is ACMEChallengeValidation.INVALID:
            raise ACMEInvalidChallengeError('Local validation of {} failed'.format(challenge))
        if result is ACMEChallengeValidation.UNKNOWN:
            logger.warning("Unable to validate challenge %s locally, letting the ACME directory try", challenge)
