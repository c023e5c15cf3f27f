"""
Module containing the certificate lifecycle loop
"""
import logging
import threading
from enum import Enum

from acme_sentinel.account import RegistrationError
from acme_sentinel.acme_requests import ACMEError
from acme_sentinel.challenge import ResponderBindError
from acme_sentinel.issuer import IssuanceFailure
from acme_sentinel.keys import KeyKind, KeyMaterialError
from acme_sentinel.validity import truncate_days

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

RENEWAL_ERRORS = (KeyMaterialError, RegistrationError, ResponderBindError, IssuanceFailure, ACMEError)


class SchedulerState(Enum):
    """LifecycleScheduler status definition"""
    CHECKING = 1
    RENEWING = 2
    SLEEPING = 3
    STOPPED = 4


class LifecycleScheduler:  # pylint: disable=too-many-instance-attributes
    """
    Evaluates the certificate bundle, renews it when it's invalid or about to expire and
    repeats every config.monitor_interval seconds till stop() is called
    """
    def __init__(self, *, config, evaluator, key_store, registrar, issuer, notifier=None):
        self.config = config
        self.evaluator = evaluator
        self.key_store = key_store
        self.registrar = registrar
        self.issuer = issuer
        self.notifier = notifier
        self.on_renewal = None
        self._state = SchedulerState.CHECKING
        self._stop = threading.Event()
        self._initial = True
        self._last_ok = None

    @property
    def state(self):
        return self._state

    def _set_state(self, state):
        if state is not self._state:
            logger.debug("Scheduler state %s -> %s", self._state.name, state.name)
        self._state = state

    def check(self):
        """Evaluates the bundle. Returns (ok, verdict)"""
        self._set_state(SchedulerState.CHECKING)
        verdict = self.evaluator.evaluate()
        for name, error in verdict.errors.items():
            logger.warning("Certificate %s error: %s", name, error)

        if not verdict.errors and not verdict.in_window:
            chain = verdict.chain.value
            logger.warning("Certificate outside of its validity window: %s - %s", chain.not_before,
                           chain.not_after)

        is_ok = verdict.is_ok(self.config.renew_days)
        days_remaining = verdict.days_remaining
        if days_remaining is not None and (not is_ok or self._initial):
            logger.warning("Certificate expires in %.1f days: %s", truncate_days(days_remaining),
                           'skipping renewal' if is_ok else 'renewing now')

        if is_ok != self._last_ok:
            logger.info("Certificate status changed to %s", 'OK' if is_ok else 'NOT OK')
            self._last_ok = is_ok

        if is_ok and self._initial:
            self.log_summary(verdict)
            self._initial = False

        return is_ok, verdict

    def renew(self):
        """Loads or creates keys and account and requests a new certificate. Returns True on success"""
        self._set_state(SchedulerState.RENEWING)
        self._initial = True
        try:
            account_key = self.key_store.load_or_create(KeyKind.ACCOUNT, self.config.account_key_file)
            account = self.registrar.load_or_create(self.config.account_file, account_key, self.config.contact)
            server_key = self.key_store.load_or_create(KeyKind.SERVER, self.config.server_key_file)
            self.issuer.issue(self.config.domains, account, account_key, server_key)
        except IssuanceFailure as failure:
            logger.warning("Certificate issuance failed: %s", failure.reason)
            return False
        except RENEWAL_ERRORS:
            logger.exception("Certificate renewal failed")
            return False
        except Exception:  # pylint: disable=broad-except
            logger.exception("Unexpected error renewing certificate")
            return False

        if self.on_renewal is not None:
            try:
                self.on_renewal()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Renewal callback failed")

        return True

    def run_once(self):
        """Runs one Checking -> (Renewing -> Checking) iteration. Returns True if the certificate is OK"""
        is_ok, _ = self.check()
        if not is_ok and self.renew():
            is_ok, _ = self.check()
            if not is_ok:
                logger.error("Certificate did not pass validation after renewal")

        self._watchdog(is_ok)
        return is_ok

    def run(self):
        """Unbounded lifecycle loop, returns once stop() has been called"""
        logger.info("Starting certificate monitor for %s every %s seconds", self.config.domains,
                    self.config.monitor_interval)
        if self.notifier is not None:
            self.notifier.notify('READY=1')
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Unexpected error checking certificate")
            self._set_state(SchedulerState.SLEEPING)
            if self._stop.wait(self.config.monitor_interval):
                break
            logger.info("Monitor certificate check")

        self._set_state(SchedulerState.STOPPED)
        logger.info("Certificate monitor stopped")

    def stop(self):
        """Makes run() return before its current sleep completes"""
        self._stop.set()

    def _watchdog(self, is_ok):
        if self.notifier is None:
            return
        self.notifier.notify('WATCHDOG=1')
        self.notifier.notify('STATUS=certificate {}'.format('valid' if is_ok else 'invalid'))

    @staticmethod
    def log_summary(verdict):
        """Logs the human readable description of the bundle"""
        account = verdict.account.attributes
        chain = verdict.chain.attributes
        logger.info("ACME account: %s created on %s status %s", account['contact'], account['created_at'],
                    account['status'])
        logger.info("Account key: %s, server key: %s", verdict.account_key.attributes,
                    verdict.server_key.attributes)
        logger.info("Certificate: subject %s issuer %s valid from %s until %s", chain['subject'],
                    chain['issuer'], chain['not_before'], chain['not_after'])
