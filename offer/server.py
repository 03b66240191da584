import socket
import threading
from typing import List, Optional

from flask import Flask
from werkzeug.serving import ThreadedWSGIServer, WSGIRequestHandler, select_address_family

from .app import ServerContext, create_app
from .errors import TransportError
from .logs import get_logger

logger = get_logger("offer.lifecycle")


class OfferRequestHandler(WSGIRequestHandler):
    # one request per connection, draining never waits on idle keep-alive sockets
    protocol_version = "HTTP/1.0"

    def send_response(self, code, message=None):
        # the application sets its own Server header
        self.log_request(code)
        self.send_response_only(code, message)
        self.send_header("Date", self.date_time_string())


class OfferWSGIServer(ThreadedWSGIServer):
    """Thread-per-connection server whose close waits for running requests."""

    daemon_threads = False
    block_on_close = True


class OfferServer:
    """Bind the listener for *context* and run it until shutdown completes."""

    def __init__(self, context: ServerContext, app: Optional[Flask] = None) -> None:
        self.context = context
        self.app = app or create_app(context)
        config = context.config
        # werkzeug exits the process when it fails to bind on its own
        try:
            sock = socket.create_server(
                (config.host, config.port),
                family=select_address_family(config.host, config.port),
            )
        except OSError as error:
            raise TransportError(f"listen {config.host}:{config.port}: {error}") from error
        try:
            self._server = OfferWSGIServer(
                config.host, config.port, self.app, handler=OfferRequestHandler, fd=sock.fileno()
            )
        finally:
            sock.close()
        self._errors: List[BaseException] = []

    @property
    def port(self) -> int:
        return self._server.server_address[1]

    def _serve(self) -> None:
        try:
            self._server.serve_forever()
        except Exception as error:
            self._errors.append(error)
            self.context.coordinator.trigger("listener failed")

    def serve(self, install_signals: bool = True) -> str:
        """Serve until a shutdown source fires, drain, then clean up.

        Returns the reason that started the drain.
        """

        coordinator = self.context.coordinator
        listener = threading.Thread(target=self._serve, name="offer-listener")
        if install_signals:
            coordinator.install_signal_handlers()
        try:
            coordinator.start_timer(self.context.config.timeout)
            logger.info("server_listening host=%s port=%d", self.context.config.host, self.port)
            listener.start()
            reason = coordinator.wait()
            logger.info("server_draining reason=%s", reason)
            # stops accepting; closing the server then joins in-flight requests
            self._server.shutdown()
            listener.join()
        finally:
            coordinator.close()
        coordinator.mark_stopped()

        if self._errors:
            error = self._errors[0]
            raise TransportError(f"serve: {error}") from error
        self._remove_temporary_payload()
        return reason

    def _remove_temporary_payload(self) -> None:
        payload = self.context.payload
        if payload is None or not payload.temporary:
            return
        if self.context.config.keep:
            logger.info("payload_kept path=%s", payload.path)
            return
        logger.info("payload_removing path=%s", payload.path)
        payload.path.unlink()
