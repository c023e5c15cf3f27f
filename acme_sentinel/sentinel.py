# Certificate lifecycle service
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.

# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
This module is the entry point of acme-sentinel. It wires every component together from
a single SentinelConfig and exposes the operations a host process needs:
    - get_certificate()
    - check_certificate()
    - monitor()
"""
import argparse
import logging
import logging.config
import signal
import sys
from collections import namedtuple

import sdnotify
import yaml

from acme_sentinel.account import AccountRegistrar
from acme_sentinel.acme_requests import ACMEAuthority
from acme_sentinel.challenge import ChallengeResponder
from acme_sentinel.config import ConfigError, SentinelConfig
from acme_sentinel.issuer import CertificateIssuer
from acme_sentinel.keys import KeyKind, KeyMaterialStore
from acme_sentinel.scheduler import LifecycleScheduler
from acme_sentinel.validity import ValidityEvaluator

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

DEFAULT_CONFIG_PATH = '/etc/acme-sentinel/config.yaml'

LOGGING_CONFIG = {
    'disable_existing_loggers': False,
    'version': 1,
    'formatters': {
        'default': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',  # logging handler that outputs log messages to terminal
            'level': 'DEBUG',                  # filtering happens on the logger level
            'formatter': 'default',
        },
    },
    'loggers': {
        'acme_sentinel': {
            'handlers': ['console'],
            'level': 'INFO',
        },
    }
}

CertificatePaths = namedtuple('CertificatePaths', ['key_path', 'chain_path'])


def configure_logging(debug=False):
    """Configure logging"""
    logging.config.dictConfig(LOGGING_CONFIG)
    if debug:
        logging.getLogger('acme_sentinel').setLevel(logging.DEBUG)


class AcmeSentinel:
    """
    Container for every lifecycle component built from the same SentinelConfig.
    Collaborators can be injected, mainly for testing purposes.
    """
    def __init__(self, config, *, authority=None, responder=None, key_store=None, notifier=None):
        self.config = config
        if authority is None:
            authority = ACMEAuthority(directory_url=config.directory_url, user_agent=config.application,
                                      prevalidate=config.prevalidate, verify_ssl=config.verify_tls,
                                      validation_port=config.http_port)
        if responder is None:
            responder = ChallengeResponder(bind_address=config.bind_address, port=config.http_port)
        if notifier is None and config.watchdog.get('systemd'):
            notifier = sdnotify.SystemdNotifier()

        self.authority = authority
        self.responder = responder
        self.key_store = key_store if key_store is not None else KeyMaterialStore()
        self.registrar = AccountRegistrar(authority)
        self.evaluator = ValidityEvaluator(config.bundle_paths)
        self.issuer = CertificateIssuer(authority=authority, responder=responder, bundle_path=config.full_chain,
                                        timeout=config.issuance_timeout, debug=config.debug)
        self.scheduler = LifecycleScheduler(config=config, evaluator=self.evaluator, key_store=self.key_store,
                                            registrar=self.registrar, issuer=self.issuer, notifier=notifier)

    def load_or_create_keys(self):
        """Returns (account_key, server_key), generating the missing ones"""
        account_key = self.key_store.load_or_create(KeyKind.ACCOUNT, self.config.account_key_file)
        server_key = self.key_store.load_or_create(KeyKind.SERVER, self.config.server_key_file)
        return account_key, server_key

    def load_or_create_account(self):
        """Returns the AccountRecord, registering it if needed"""
        account_key = self.key_store.load_or_create(KeyKind.ACCOUNT, self.config.account_key_file)
        return self.registrar.load_or_create(self.config.account_file, account_key, self.config.contact)

    def check_certificate(self):
        """Returns True if the persisted certificate is valid and doesn't need to be renewed yet"""
        is_ok, _ = self.scheduler.check()
        return is_ok

    def get_certificate(self):
        """
        Makes sure a valid certificate is available, requesting a new one if needed.
        Returns CertificatePaths or None if no valid certificate could be obtained
        """
        if not self.scheduler.run_once():
            return None
        return CertificatePaths(key_path=self.config.server_key_file, chain_path=self.config.full_chain)

    def monitor(self, on_renewal=None):
        """Runs the lifecycle loop till stop() is called. on_renewal is invoked after every renewal"""
        self.scheduler.on_renewal = on_renewal
        self.scheduler.run()

    def stop(self, *_):
        """Stops the lifecycle loop, usable as signal handler"""
        logger.info("Stopping certificate monitor")
        self.scheduler.stop()

    def report(self):
        """Structured diagnostic report of the persisted bundle"""
        return self.evaluator.evaluate().report()


def main(argv=None):
    """
    Main entry point.
    """
    parser = argparse.ArgumentParser(description="""Keeps a TLS certificate obtained through ACME valid,
    renewing it before it expires. The http-01 challenge is answered by a short lived built-in
    HTTP server.""")
    parser.add_argument('--version', action='version', version='0.1')
    parser.add_argument('-c', '--config', default=DEFAULT_CONFIG_PATH, help='configuration file')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--check', action='store_true',
                      help='print the state of the current certificate and exit, exit code 1 if not valid')
    mode.add_argument('--once', action='store_true', help='get a valid certificate and exit')
    args = parser.parse_args(argv)

    try:
        config = SentinelConfig.load(args.config)
    except ConfigError as config_error:
        configure_logging()
        logger.error("Invalid configuration: %s", config_error)
        return 2

    configure_logging(debug=config.debug)
    sentinel = AcmeSentinel(config)

    if args.check:
        print(yaml.safe_dump(sentinel.report(), default_flow_style=False), end='')
        return 0 if sentinel.check_certificate() else 1

    if args.once:
        paths = sentinel.get_certificate()
        if paths is None:
            return 1
        logger.info("Certificate available on %s (key %s)", paths.chain_path, paths.key_path)
        return 0

    signal.signal(signal.SIGTERM, sentinel.stop)
    signal.signal(signal.SIGINT, sentinel.stop)
    sentinel.monitor()
    return 0


if __name__ == '__main__':
    sys.exit(main())
