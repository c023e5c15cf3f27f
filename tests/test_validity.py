import os
import tempfile
import unittest
from datetime import timedelta

from acme_sentinel.account import AccountRecord
from acme_sentinel.keys import KeyKind, KeyMaterialStore
from acme_sentinel.validity import (BundlePaths, ValidityEvaluator,
                                    ValidityParseError, truncate_days)
from tests.acme_fakes import TEST_DOMAIN, FakeCA, registration, utcnow, write_bundle


class TruncateDaysTest(unittest.TestCase):
    def test_truncate(self):
        test_cases = [
            (2.99, 2.9),
            (3.0, 3.0),
            (89.96, 89.9),
            (0.05, 0.0),
            (-0.15, -0.1),
        ]
        for days, expected in test_cases:
            with self.subTest(days=days):
                self.assertAlmostEqual(truncate_days(days), expected)


class ValidityEvaluatorTest(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.ca = FakeCA()

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        base = self.temp_dir.name
        self.paths = BundlePaths(server_key=os.path.join(base, 'private.pem'),
                                 account_key=os.path.join(base, 'account.pem'),
                                 chain=os.path.join(base, 'fullchain.pem'),
                                 account=os.path.join(base, 'account.json'))
        self.evaluator = ValidityEvaluator(self.paths)

    def tearDown(self):
        self.temp_dir.cleanup()

    def _write_bundle(self, from_date=None, until_date=None):
        store = KeyMaterialStore()
        store.load_or_create(KeyKind.SERVER, self.paths.server_key)
        store.load_or_create(KeyKind.ACCOUNT, self.paths.account_key)
        AccountRecord.from_registration(registration()).save(self.paths.account)
        return write_bundle(self.paths.chain, self.ca, from_date=from_date, until_date=until_date)

    def test_missing_directory(self):
        missing = os.path.join(self.temp_dir.name, 'missing')
        paths = BundlePaths(server_key=os.path.join(missing, 'private.pem'),
                            account_key=os.path.join(missing, 'account.pem'),
                            chain=os.path.join(missing, 'fullchain.pem'),
                            account=os.path.join(missing, 'account.json'))
        verdict = self.evaluator.evaluate(paths=paths)

        self.assertEqual(set(verdict.errors), {'server_key', 'account_key', 'chain', 'account'})
        for error in verdict.errors.values():
            self.assertIsInstance(error, ValidityParseError)
        self.assertFalse(verdict.in_window)
        self.assertIsNone(verdict.days_remaining)
        self.assertFalse(verdict.is_ok(renew_days=3))
        report = verdict.report()
        self.assertIsNone(report['days_remaining'])
        self.assertIn('error', report['chain'])

    def test_valid_bundle(self):
        now = utcnow().replace(microsecond=0)
        self._write_bundle(from_date=now - timedelta(days=1), until_date=now + timedelta(days=89, hours=23))
        verdict = self.evaluator.evaluate(now=now)

        self.assertEqual(verdict.errors, {})
        self.assertTrue(verdict.in_window)
        self.assertTrue(verdict.is_ok(renew_days=3))
        report = verdict.report()
        self.assertEqual(report['days_remaining'], 89.9)
        self.assertEqual(report['chain']['subject'], TEST_DOMAIN)
        self.assertEqual(report['chain']['algorithm'], 'sha256')
        self.assertEqual(report['chain']['chain_length'], 2)
        self.assertEqual(report['chain']['not_after'], now + timedelta(days=89, hours=23))
        self.assertEqual(report['server_key'], {'type': 'RSA', 'size': 2048})
        self.assertEqual(report['account_key'], {'type': 'EC', 'curve': 'secp256r1'})
        self.assertEqual(report['account']['contact'], 'mailto:subscriber@example.org')
        self.assertEqual(report['account']['status'], 'valid')

    def test_renewal_threshold(self):
        now = utcnow().replace(microsecond=0)
        self._write_bundle(from_date=now - timedelta(days=80), until_date=now + timedelta(days=2))
        verdict = self.evaluator.evaluate(now=now)

        self.assertEqual(verdict.errors, {})
        self.assertTrue(verdict.in_window)
        self.assertFalse(verdict.is_ok(renew_days=3))
        self.assertTrue(verdict.is_ok(renew_days=1))
        # the threshold itself isn't enough
        self.assertFalse(verdict.is_ok(renew_days=2))

    def test_outside_window(self):
        now = utcnow().replace(microsecond=0)
        self._write_bundle(from_date=now - timedelta(days=90), until_date=now - timedelta(days=1))
        expired = self.evaluator.evaluate(now=now)
        self.assertFalse(expired.in_window)
        self.assertFalse(expired.is_ok(renew_days=0))
        self.assertLess(expired.days_remaining, 0)

        not_yet_valid = self.evaluator.evaluate(now=now - timedelta(days=100))
        self.assertFalse(not_yet_valid.in_window)
        self.assertFalse(not_yet_valid.is_ok(renew_days=0))

    def test_corrupt_component(self):
        now = utcnow().replace(microsecond=0)
        self._write_bundle(from_date=now - timedelta(days=1), until_date=now + timedelta(days=60))
        with open(self.paths.account, 'w') as account_file:
            account_file.write('{not json')

        verdict = self.evaluator.evaluate(now=now)
        self.assertEqual(list(verdict.errors), ['account'])
        self.assertTrue(verdict.in_window)
        self.assertFalse(verdict.is_ok(renew_days=3))
        self.assertIn('error', verdict.report()['account'])
