"""
Module containing configuration handling classes
"""
import logging
import os

import yaml

from acme_sentinel.acme_requests import DIRECTORY_URL
from acme_sentinel.issuer import DEFAULT_ISSUANCE_TIMEOUT
from acme_sentinel.validity import BundlePaths

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

# default values that can be customized via the config file. Check the README for a valid example
DEFAULT_APPLICATION = 'acme-sentinel/0.1'
DEFAULT_CERT_DIRECTORY = './cert'
DEFAULT_MONITOR_INTERVAL = 12 * 60 * 60
DEFAULT_RENEW_DAYS = 3
DEFAULT_HTTP_PORT = 80

PATH_OPTIONS = {
    'account_file': 'account.json',
    'account_key_file': 'account.pem',
    'server_key_file': 'private.pem',
    'full_chain': 'fullchain.pem',
}


class ConfigError(Exception):
    """Missing or invalid configuration"""


class SentinelConfig:
    """Class representing the certificate lifecycle configuration"""
    def __init__(self, *, domains, maintainer=None, subscriber=None, application=DEFAULT_APPLICATION,
                 directory_url=DIRECTORY_URL, account_file=None, account_key_file=None, server_key_file=None,
                 full_chain=None, monitor_interval=DEFAULT_MONITOR_INTERVAL, renew_days=DEFAULT_RENEW_DAYS,
                 debug=False, http_port=DEFAULT_HTTP_PORT, bind_address='',
                 issuance_timeout=DEFAULT_ISSUANCE_TIMEOUT, prevalidate=True, verify_tls=True, watchdog=None):
        if not domains or not isinstance(domains, (list, tuple)):
            raise ConfigError('At least one domain must be configured')
        if not subscriber:
            subscriber = maintainer
        if not subscriber:
            raise ConfigError('A subscriber email is required to register the ACME account')

        self.domains = list(domains)
        self.maintainer = maintainer
        self.subscriber = subscriber
        self.application = application
        self.directory_url = directory_url
        self.account_file = account_file or os.path.join(DEFAULT_CERT_DIRECTORY, PATH_OPTIONS['account_file'])
        self.account_key_file = account_key_file or os.path.join(DEFAULT_CERT_DIRECTORY,
                                                                 PATH_OPTIONS['account_key_file'])
        self.server_key_file = server_key_file or os.path.join(DEFAULT_CERT_DIRECTORY,
                                                               PATH_OPTIONS['server_key_file'])
        self.full_chain = full_chain or os.path.join(DEFAULT_CERT_DIRECTORY, PATH_OPTIONS['full_chain'])
        self.monitor_interval = monitor_interval
        self.renew_days = renew_days
        self.debug = debug
        self.http_port = http_port
        self.bind_address = bind_address
        self.issuance_timeout = issuance_timeout
        self.prevalidate = prevalidate
        self.verify_tls = verify_tls
        self.watchdog = watchdog if watchdog is not None else {'systemd': False}

    @property
    def bundle_paths(self):
        """BundlePaths pointing to the configured files"""
        return BundlePaths(server_key=self.server_key_file, account_key=self.account_key_file,
                           chain=self.full_chain, account=self.account_file)

    @property
    def contact(self):
        """Contact used when registering the ACME account"""
        return self.subscriber

    @staticmethod
    def _get_number(config, name, default, cast, positive=False):
        if name not in config:
            return default
        try:
            value = cast(config[name])
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid %s %s. Using the default one: %s", name, config[name], default)
            return default
        if value < 0 or (positive and value == 0):
            logger.warning("Ignoring out of range %s %s. Using the default one: %s", name, value, default)
            return default
        return value

    @staticmethod
    def load(file_name):
        """Load a config from the specified file_name"""
        logger.debug("Loading config file: %s", file_name)
        try:
            with open(file_name, encoding='utf-8') as config_file:
                config = yaml.safe_load(config_file)
        except (OSError, yaml.YAMLError) as load_error:
            raise ConfigError('Unable to load config file {}'.format(file_name)) from load_error

        if not isinstance(config, dict):
            raise ConfigError('Config file {} must contain a mapping'.format(file_name))

        cert_directory = config.get('cert_directory', DEFAULT_CERT_DIRECTORY)
        paths = {}
        for option, file_name_default in PATH_OPTIONS.items():
            paths[option] = config.get(option, os.path.join(cert_directory, file_name_default))

        watchdog = config.get('watchdog', {'systemd': False})
        if not isinstance(watchdog, dict):
            watchdog = {'systemd': False}
        watchdog['systemd'] = bool(watchdog.get('systemd', False))

        # staging/test mode implies skipping the local challenge pre-validation
        test_mode = bool(config.get('test_mode', False))

        return SentinelConfig(
            domains=config.get('domains'),
            maintainer=config.get('maintainer'),
            subscriber=config.get('subscriber'),
            application=config.get('application', DEFAULT_APPLICATION),
            directory_url=config.get('directory_url', DIRECTORY_URL),
            monitor_interval=SentinelConfig._get_number(config, 'monitor_interval', DEFAULT_MONITOR_INTERVAL,
                                                        float, positive=True),
            renew_days=SentinelConfig._get_number(config, 'renew_days', DEFAULT_RENEW_DAYS, float),
            debug=bool(config.get('debug', False)),
            http_port=SentinelConfig._get_number(config, 'http_port', DEFAULT_HTTP_PORT, int),
            bind_address=config.get('bind_address', ''),
            issuance_timeout=SentinelConfig._get_number(config, 'issuance_timeout', DEFAULT_ISSUANCE_TIMEOUT,
                                                        float, positive=True),
            prevalidate=bool(config.get('prevalidate', not test_mode)),
            verify_tls=bool(config.get('verify_tls', True)),
            watchdog=watchdog,
            **paths,
        )
