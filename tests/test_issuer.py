import os
import tempfile
import unittest
from datetime import datetime
from unittest import mock

from acme_sentinel.account import AccountRecord
from acme_sentinel.acme_requests import ACMEError, ACMEInvalidChallengeError
from acme_sentinel.challenge import ChallengeResponder, ResponderState
from acme_sentinel.issuer import CertificateIssuer, IssuanceFailure
from acme_sentinel.x509 import Certificate, ECPrivateKey, RSAPrivateKey
from tests.acme_fakes import TEST_DOMAIN, FakeAuthority, registration, write_bundle


class CertificateIssuerTest(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.account_key = ECPrivateKey()
        cls.account_key.generate()
        cls.server_key = RSAPrivateKey()
        cls.server_key.generate()
        cls.account = AccountRecord.from_registration(registration())

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.bundle_path = os.path.join(self.temp_dir.name, 'cert', 'fullchain.pem')
        self.responder = ChallengeResponder(bind_address='127.0.0.1', port=0)

    def tearDown(self):
        self.responder.close()
        self.temp_dir.cleanup()

    def _issuer(self, authority, timeout=30):
        return CertificateIssuer(authority=authority, responder=self.responder, bundle_path=self.bundle_path,
                                 timeout=timeout)

    def test_issue(self):
        authority = FakeAuthority(responder=self.responder)
        issuer = self._issuer(authority)
        self.assertEqual(authority.notify, issuer.notify)

        bundle = issuer.issue([TEST_DOMAIN, 'www.' + TEST_DOMAIN], self.account, self.account_key,
                              self.server_key)

        self.assertEqual(bundle.common_name, TEST_DOMAIN)
        self.assertEqual(bundle.subject_alternative_names, [TEST_DOMAIN, 'www.' + TEST_DOMAIN])
        self.assertEqual(len(bundle.chain), 2)
        self.assertEqual(Certificate.load(self.bundle_path).pem, bundle.pem)
        self.assertEqual(bundle.certificate.public_key().public_numbers(),
                         self.server_key.key.public_key().public_numbers())

        self.assertEqual(authority.challenge_responses, [(200, 'token-1.thumbprint')])
        request = authority.certificate_requests[0]
        self.assertIs(request['account'], self.account)
        self.assertIs(request['account_key'], self.account_key)
        self.assertIsInstance(request['deadline'], datetime)
        self.assertIs(self.responder.status, ResponderState.CLOSED)

    def test_notify(self):
        issuer = self._issuer(FakeAuthority())
        issuer.notify('challenge_status', {'altname': TEST_DOMAIN, 'status': 'answered'})
        issuer.notify('challenge_created', {'altname': TEST_DOMAIN, 'challenge': {'token': 'token-1'}})
        self.assertEqual(len(self.responder.state), 0)

        issuer.notify('challenge_created', {'altname': TEST_DOMAIN,
                                            'challenge': {'token': 'token-1', 'keyAuthorization': 'proof'}})
        issuer.notify('challenge_created', {'altname': TEST_DOMAIN,
                                            'challenge': {'token': 'token-1', 'keyAuthorization': 'other'}})
        self.assertEqual(len(self.responder.state), 1)
        self.assertEqual(self.responder.state.wait_for('/.well-known/acme-challenge/token-1', timeout=0), 'proof')

    def test_no_domains(self):
        with self.assertRaises(IssuanceFailure):
            self._issuer(FakeAuthority()).issue([], self.account, self.account_key, self.server_key)

    def test_acme_errors(self):
        for error in (ACMEError('rate limited'), ACMEInvalidChallengeError('challenge rejected')):
            with self.subTest(error=error):
                issuer = self._issuer(FakeAuthority(fail_with=error))
                with self.assertRaises(IssuanceFailure) as context:
                    issuer.issue([TEST_DOMAIN], self.account, self.account_key, self.server_key)
                self.assertEqual(context.exception.reason, str(error))
                self.assertFalse(os.path.exists(self.bundle_path))
                self.assertIs(self.responder.status, ResponderState.CLOSED)

    def test_missing_chain_keeps_previous_bundle(self):
        authority = FakeAuthority(responder=self.responder, provide_chain=False)
        os.makedirs(os.path.dirname(self.bundle_path))
        previous = write_bundle(self.bundle_path, authority.ca)

        with self.assertRaises(IssuanceFailure):
            self._issuer(authority).issue([TEST_DOMAIN], self.account, self.account_key, self.server_key)

        self.assertEqual(Certificate.load(self.bundle_path).pem, previous.pem)

    def test_unwritable_bundle_path(self):
        authority = FakeAuthority(responder=self.responder)
        with open(os.path.join(self.temp_dir.name, 'cert'), 'w') as not_a_directory:
            not_a_directory.write('file')

        with self.assertRaises(IssuanceFailure):
            self._issuer(authority).issue([TEST_DOMAIN], self.account, self.account_key, self.server_key)

    def test_domain_too_long_for_common_name(self):
        domain = 'a' * 60 + '.' + TEST_DOMAIN
        authority = FakeAuthority(responder=self.responder)

        bundle = self._issuer(authority).issue([domain, TEST_DOMAIN], self.account, self.account_key,
                                               self.server_key)

        self.assertIsNone(bundle.common_name)
        self.assertEqual(bundle.subject_alternative_names, [domain, TEST_DOMAIN])
        self.assertEqual(Certificate.load(self.bundle_path).pem, bundle.pem)

    def test_invalid_csr(self):
        authority = FakeAuthority(responder=self.responder)
        with mock.patch('acme_sentinel.issuer.CertificateSigningRequest',
                        side_effect=ValueError('invalid domain')):
            with self.assertRaises(IssuanceFailure) as context:
                self._issuer(authority).issue([TEST_DOMAIN], self.account, self.account_key, self.server_key)

        self.assertIn('invalid domain', context.exception.reason)
        self.assertEqual(authority.certificate_requests, [])
        self.assertIs(self.responder.status, ResponderState.IDLE)
