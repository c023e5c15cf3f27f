"""
Module driving a single certificate issuance attempt
"""
import logging
import os
import threading
import time
from datetime import datetime, timedelta

from acme_sentinel.acme_requests import ACMEError, ACMENotification
from acme_sentinel.x509 import Certificate, CertificateSigningRequest, X509Error

DEFAULT_ISSUANCE_TIMEOUT = 300
MAX_COMMON_NAME_LENGTH = 64  # upper bound of the X.520 CommonName attribute

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class IssuanceFailure(Exception):
    """The ACME directory didn't provide a certificate"""
    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


class CertificateIssuer:
    """
    Performs the request -> challenge -> proof -> finalize sequence:
        - builds the CSR
        - opens the challenge responder and wires the ACME notifications into its ChallengeState
        - persists the issued full chain
    Only one attempt runs at a time.
    """
    def __init__(self, *, authority, responder, bundle_path, timeout=DEFAULT_ISSUANCE_TIMEOUT, debug=False):
        self.authority = authority
        self.responder = responder
        self.bundle_path = bundle_path
        self.timeout = timeout
        self.debug = debug
        self._lock = threading.Lock()
        self.authority.notify = self.notify

    def notify(self, event, message):
        """ACME client notification hook, publishes proof values on the responder ChallengeState"""
        if self.debug:
            logger.debug("ACME notification %s: %s", event, message)

        if event != ACMENotification.CHALLENGE_CREATED.value:
            return

        challenge = message.get('challenge') or {}
        token = challenge.get('token')
        key_authorization = challenge.get('keyAuthorization')
        if not (token and key_authorization):
            return

        if self.responder.state.publish(token, key_authorization):
            logger.info("Proof value received for %s", message.get('altname', ''))
        else:
            logger.debug("Ignoring repeated proof value for token %s", token)

    def issue(self, domains, account, account_key, server_key):
        """
        Requests a certificate for domains. Returns the persisted Certificate (leaf + chain)
        or raises IssuanceFailure. The previous bundle is left untouched on failure
        """
        if not domains:
            raise IssuanceFailure('No domains configured')

        with self._lock:
            return self._issue(domains, account, account_key, server_key)

    def _issue(self, domains, account, account_key, server_key):
        logger.info("Requesting certificate for %s", domains)
        common_name = domains[0]
        if len(common_name) > MAX_COMMON_NAME_LENGTH:
            logger.info("%s doesn't fit in the Common Name, requesting a SAN only certificate", common_name)
            common_name = None
        try:
            csr = CertificateSigningRequest(private_key=server_key, common_name=common_name, sans=domains)
            csr_pem = csr.pem
        except (TypeError, ValueError, X509Error) as csr_error:
            raise IssuanceFailure('Unable to build CSR for {}: {}'.format(domains, csr_error)) from csr_error

        # using now() instead of utcnow() cause acme_client uses now()
        # and using utcnow() on systems where now() != utcnow() cause
        # unexpected behaviour
        deadline = datetime.now() + timedelta(seconds=self.timeout)
        with self.responder.open(domains, deadline=time.monotonic() + self.timeout):
            try:
                issued = self.authority.create_certificate(account=account, account_key=account_key,
                                                           csr=csr_pem, domains=domains, deadline=deadline)
            except ACMEError as acme_error:
                logger.warning("Certificate request for %s failed: %s", domains, acme_error)
                raise IssuanceFailure(str(acme_error)) from acme_error

        if issued is None or not issued.cert or not issued.chain:
            raise IssuanceFailure('ACME directory returned no certificate or chain')

        try:
            bundle = Certificate.from_parts(issued.cert, issued.chain)
        except X509Error as certificate_error:
            raise IssuanceFailure('Received invalid PEM from ACME server') from certificate_error

        try:
            directory = os.path.dirname(self.bundle_path)
            if directory:
                os.makedirs(directory, mode=0o750, exist_ok=True)
            bundle.save(self.bundle_path)
        except OSError as save_error:
            raise IssuanceFailure('Unable to persist certificate on {}'.format(self.bundle_path)) from save_error

        logger.info("Certificate for %s persisted on %s, valid until %s", domains, self.bundle_path,
                    bundle.not_after)
        return bundle
