import os
import tempfile
import unittest

from acme_sentinel.acme_requests import DIRECTORY_URL, STAGING_DIRECTORY_URL
from acme_sentinel.config import (DEFAULT_MONITOR_INTERVAL, DEFAULT_RENEW_DAYS,
                                  ConfigError, SentinelConfig)
from acme_sentinel.issuer import DEFAULT_ISSUANCE_TIMEOUT

VALID_CONFIG_EXAMPLE = '''
domains:
  - sentinel.example.org
  - www.sentinel.example.org
maintainer: hostmaster@example.org
directory_url: https://acme-staging-v02.api.letsencrypt.org/directory
cert_directory: /var/lib/acme-sentinel
server_key_file: /etc/ssl/private/sentinel.pem
monitor_interval: 3600
renew_days: 10
http_port: 8080
watchdog:
  systemd: true
'''

MINIMAL_CONFIG = '''
domains:
  - sentinel.example.org
subscriber: subscriber@example.org
'''


class SentinelConfigTest(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.temp_dir.name, 'config.yaml')

    def tearDown(self):
        self.temp_dir.cleanup()

    def _load(self, content):
        with open(self.config_path, 'w') as config_file:
            config_file.write(content)
        return SentinelConfig.load(self.config_path)

    def test_load_valid_config(self):
        config = self._load(VALID_CONFIG_EXAMPLE)
        self.assertEqual(config.domains, ['sentinel.example.org', 'www.sentinel.example.org'])
        self.assertEqual(config.contact, 'hostmaster@example.org')
        self.assertEqual(config.directory_url, STAGING_DIRECTORY_URL)
        self.assertEqual(config.account_file, '/var/lib/acme-sentinel/account.json')
        self.assertEqual(config.account_key_file, '/var/lib/acme-sentinel/account.pem')
        self.assertEqual(config.server_key_file, '/etc/ssl/private/sentinel.pem')
        self.assertEqual(config.full_chain, '/var/lib/acme-sentinel/fullchain.pem')
        self.assertEqual(config.monitor_interval, 3600)
        self.assertEqual(config.renew_days, 10)
        self.assertEqual(config.http_port, 8080)
        self.assertEqual(config.watchdog, {'systemd': True})
        self.assertTrue(config.prevalidate)

        paths = config.bundle_paths
        self.assertEqual(paths.server_key, '/etc/ssl/private/sentinel.pem')
        self.assertEqual(paths.chain, '/var/lib/acme-sentinel/fullchain.pem')

    def test_defaults(self):
        config = self._load(MINIMAL_CONFIG)
        self.assertEqual(config.contact, 'subscriber@example.org')
        self.assertEqual(config.directory_url, DIRECTORY_URL)
        self.assertEqual(config.account_file, os.path.join('./cert', 'account.json'))
        self.assertEqual(config.monitor_interval, DEFAULT_MONITOR_INTERVAL)
        self.assertEqual(config.renew_days, DEFAULT_RENEW_DAYS)
        self.assertEqual(config.issuance_timeout, DEFAULT_ISSUANCE_TIMEOUT)
        self.assertEqual(config.watchdog, {'systemd': False})
        self.assertFalse(config.debug)

    def test_subscriber_over_maintainer(self):
        config = self._load(MINIMAL_CONFIG + 'maintainer: hostmaster@example.org\n')
        self.assertEqual(config.contact, 'subscriber@example.org')

    def test_test_mode(self):
        config = self._load(MINIMAL_CONFIG + 'test_mode: true\n')
        self.assertFalse(config.prevalidate)
        config = self._load(MINIMAL_CONFIG + 'test_mode: true\nprevalidate: true\n')
        self.assertTrue(config.prevalidate)

    def test_invalid_numbers(self):
        with self.assertLogs('acme_sentinel.config', level='WARNING') as logs:
            config = self._load(MINIMAL_CONFIG + 'renew_days: -1\nmonitor_interval: often\n')
        self.assertEqual(config.renew_days, DEFAULT_RENEW_DAYS)
        self.assertEqual(config.monitor_interval, DEFAULT_MONITOR_INTERVAL)
        self.assertEqual(len(logs.output), 2)

    def test_zero_intervals(self):
        with self.assertLogs('acme_sentinel.config', level='WARNING') as logs:
            config = self._load(MINIMAL_CONFIG + 'monitor_interval: 0\nissuance_timeout: 0\nrenew_days: 0\n')
        self.assertEqual(config.monitor_interval, DEFAULT_MONITOR_INTERVAL)
        self.assertEqual(config.issuance_timeout, DEFAULT_ISSUANCE_TIMEOUT)
        self.assertEqual(config.renew_days, 0)
        self.assertEqual(len(logs.output), 2)

    def test_invalid_config(self):
        test_cases = [
            ('no domains', 'subscriber: subscriber@example.org\n'),
            ('empty domains', 'domains: []\nsubscriber: subscriber@example.org\n'),
            ('no contact', 'domains:\n  - sentinel.example.org\n'),
            ('not a mapping', '- sentinel.example.org\n'),
            ('invalid yaml', 'domains: [sentinel.example.org\n'),
        ]
        for name, content in test_cases:
            with self.subTest(name=name):
                with self.assertRaises(ConfigError):
                    self._load(content)

    def test_missing_file(self):
        with self.assertRaises(ConfigError):
            SentinelConfig.load(os.path.join(self.temp_dir.name, 'missing.yaml'))
