"""
Short lived HTTP responder answering http-01 challenges.

The ACME directory may fetch the challenge before the key authorization has been
delivered through the client notification hook, so request handlers wait on
ChallengeState till the value is published (or the issuance deadline expires).
"""
import logging
import socketserver
import threading
import time
from enum import Enum
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

import flask

WELL_KNOWN_PATH = '/.well-known/acme-challenge/'
HTTP_METHODS = ['GET', 'HEAD', 'POST', 'PUT', 'DELETE', 'PATCH']
DEFAULT_DRAIN_TIMEOUT = 5.0

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class ResponderBindError(Exception):
    """Unable to bind the challenge responder"""


class ChallengeUnavailable(Exception):
    """The proof value wasn't published before the deadline or the attempt is over"""


class ResponderState(Enum):
    """ChallengeResponder lifecycle"""
    IDLE = 1
    LISTENING = 2   # socket bound, waiting for requests
    SERVING = 3     # at least one request in flight
    DRAINING = 4    # issuance finished, letting in-flight responses complete
    CLOSED = 5


class ChallengeState:
    """
    Proof values of the in-flight issuance attempt, keyed by challenge token.
    The first value published for a token wins, the slot is reset between attempts.
    """
    def __init__(self):
        self._cond = threading.Condition()
        self._values = {}
        self._expected = 1
        self._closed = False

    def reset(self, expected=1):
        """Drops every published value and reopens the slot for a new attempt"""
        with self._cond:
            self._values = {}
            self._expected = max(1, expected)
            self._closed = False

    def publish(self, token, value):
        """Publishes the proof value for token. Returns False if it was ignored"""
        if not token or not value:
            raise ValueError('token and value are required')

        with self._cond:
            if self._closed or token in self._values:
                return False
            self._values[token] = value
            self._cond.notify_all()

        return True

    def close(self):
        """Releases every waiter, nothing else will be served during this attempt"""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self):
        with self._cond:
            return self._closed

    def __len__(self):
        with self._cond:
            return len(self._values)

    def _match(self, url):
        for token, value in self._values.items():
            if token in url:
                return value
        return None

    def _ready(self, url):
        return self._match(url) is not None or len(self._values) >= self._expected

    def wait_for(self, url, timeout=None):
        """
        Blocks till the proof value requested by url is available.
        Returns the value whose token is part of url, the only published value if
        there is just one, or None if several values exist and none matches
        """
        with self._cond:
            self._cond.wait_for(lambda: self._closed or self._ready(url), timeout=timeout)
            if self._closed:
                raise ChallengeUnavailable('Challenge attempt is over')
            if not self._ready(url):
                raise ChallengeUnavailable('Timeout waiting for the proof value')

            value = self._match(url)
            if value is None and len(self._values) == 1:
                value = next(iter(self._values.values()))
            return value


class _ThreadingWSGIServer(socketserver.ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True
    responder = None


class _RequestHandler(WSGIRequestHandler):
    def log_message(self, format, *args):  # pylint: disable=redefined-builtin
        logger.debug("Request from %s: %s", self.address_string(), format % args)

    def handle(self):
        responder = self.server.responder
        responder.request_started()
        try:
            super().handle()
        finally:
            responder.request_finished()


def create_app(responder):
    """Creates the flask app answering the challenges published on responder.state"""
    app = flask.Flask(__name__)

    @app.route('/', defaults={'path': ''}, methods=HTTP_METHODS)
    @app.route('/<path:path>', methods=HTTP_METHODS)
    def challenge(path):  # pylint: disable=unused-variable,unused-argument
        url = flask.request.url
        if WELL_KNOWN_PATH not in url or flask.request.method not in ('GET', 'HEAD'):
            logger.info("Ignoring %s request for %s from %s", flask.request.method, url, flask.request.remote_addr)
            return flask.Response('not found', status=404, mimetype='text/plain')

        if responder.status in (ResponderState.DRAINING, ResponderState.CLOSED):
            return flask.Response('challenge attempt is over', status=503, mimetype='text/plain')

        try:
            value = responder.state.wait_for(url, timeout=responder.remaining())
        except ChallengeUnavailable as unavailable:
            logger.warning("Unable to answer challenge %s: %s", url, unavailable)
            return flask.Response('challenge not available', status=503, mimetype='text/plain')

        if value is None:
            logger.info("Unknown challenge token requested: %s", url)
            return flask.Response('not found', status=404, mimetype='text/plain')

        logger.info("Answering challenge %s requested by %s", url, flask.request.remote_addr)
        return flask.Response(value, status=200, mimetype='text/plain')

    return app


class ChallengeResponder:
    """
    HTTP server answering http-01 challenges for the duration of one issuance attempt.
    Usage:
        with responder.open(domains, deadline=deadline):
            ...  # drive the ACME order
    """
    def __init__(self, *, bind_address='', port=80, state=None, drain_timeout=DEFAULT_DRAIN_TIMEOUT):
        self.bind_address = bind_address
        self.requested_port = port
        self.state = state if state is not None else ChallengeState()
        self.drain_timeout = drain_timeout
        self.deadline = None
        self._status = ResponderState.IDLE
        self._cond = threading.Condition()
        self._in_flight = 0
        self._server = None
        self._thread = None

    @property
    def status(self):
        """Current ResponderState"""
        with self._cond:
            return self._status

    @property
    def port(self):
        """Port the responder is actually bound to"""
        if self._server is None:
            return None
        return self._server.server_port

    def remaining(self):
        """Seconds left till the deadline of the current attempt, None if unbounded"""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def request_started(self):
        with self._cond:
            self._in_flight += 1
            if self._status is ResponderState.LISTENING:
                self._status = ResponderState.SERVING

    def request_finished(self):
        with self._cond:
            self._in_flight -= 1
            if self._in_flight == 0:
                if self._status is ResponderState.SERVING:
                    self._status = ResponderState.LISTENING
                self._cond.notify_all()

    def open(self, domains, deadline=None):
        """
        Binds the responder and starts serving challenges for domains.
        deadline is a time.monotonic() value bounding how long handlers wait for proof values
        """
        with self._cond:
            if self._status not in (ResponderState.IDLE, ResponderState.CLOSED):
                raise RuntimeError('Challenge responder already open')

        self.state.reset(expected=len(domains))
        self.deadline = deadline
        try:
            server = make_server(self.bind_address, self.requested_port, create_app(self),
                                 server_class=_ThreadingWSGIServer, handler_class=_RequestHandler)
        except OSError as bind_error:
            raise ResponderBindError('Unable to bind challenge responder on {}:{}'.format(
                self.bind_address, self.requested_port)) from bind_error

        server.responder = self
        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, name='challenge-responder', daemon=True)
        with self._cond:
            self._in_flight = 0
            self._status = ResponderState.LISTENING
        self._thread.start()
        logger.info("Challenge responder listening on port %d for %s", self.port, domains)

        return self

    def close(self):
        """Stops accepting requests, lets in-flight responses finish and releases the socket"""
        with self._cond:
            if self._status in (ResponderState.IDLE, ResponderState.CLOSED):
                return
            self._status = ResponderState.DRAINING

        self.state.close()
        self._server.shutdown()
        self._thread.join()

        with self._cond:
            if not self._cond.wait_for(lambda: self._in_flight == 0, timeout=self.drain_timeout):
                logger.warning("Closing challenge responder with %d request(s) still in flight", self._in_flight)

        self._server.server_close()
        with self._cond:
            self._status = ResponderState.CLOSED
        logger.info("Challenge responder closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
