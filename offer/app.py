import mimetypes
import uuid
from dataclasses import dataclass
from secrets import compare_digest
from typing import Optional

from flask import Flask, Response, abort, g, request, send_file, stream_with_context
from werkzeug.exceptions import HTTPException, Unauthorized
from werkzeug.wsgi import ClosingIterator

from .admission import AdmissionGate
from .checksums import ChecksumCache
from .config import CHUNK_SIZE_BYTES, PROG_NAME, OfferConfig, UNLIMITED, __version__
from .errors import (
    ChecksumUnavailableError,
    MalformedBodyError,
    MissingFilenameError,
    NameCollisionError,
    UnknownAlgorithmError,
)
from .logs import get_logger, sanitize_log_value
from .payload import Origin, Payload
from .receive import UploadReceiver
from .shutdown import ShutdownCoordinator

lifecycle_logger = get_logger("offer.lifecycle")

SERVER_HEADER = f"{PROG_NAME} {__version__}"
AUTH_REALM = PROG_NAME
ADMITTED_ENVIRON_KEY = "offer.admitted"


@dataclass
class ServerContext:
    """Everything one running instance shares between requests."""

    config: OfferConfig
    gate: AdmissionGate
    coordinator: ShutdownCoordinator
    payload: Optional[Payload] = None
    checksums: Optional[ChecksumCache] = None
    receiver: Optional[UploadReceiver] = None
    upload_page: bytes = b""

    @classmethod
    def build(
        cls,
        config: OfferConfig,
        payload: Optional[Payload] = None,
        upload_page: bytes = b"",
        receiver: Optional[UploadReceiver] = None,
    ) -> "ServerContext":
        """Wire the gate, cache and coordinator for *config*.

        A live-stream payload cannot be replayed, so its budget is forced to
        exactly one request.
        """

        coordinator = ShutdownCoordinator()
        budget = config.count
        if payload is not None and payload.origin is Origin.STREAM:
            if budget not in (UNLIMITED, 1):
                lifecycle_logger.warning("request_count_overridden requested=%d applied=1", budget)
            budget = 1
        gate = AdmissionGate(
            config.tracked_method,
            budget,
            on_exhausted=lambda: coordinator.trigger("requests exhausted"),
        )

        checksums = None
        if payload is not None and payload.replayable:
            checksums = ChecksumCache(payload)
        if config.receive and receiver is None:
            receiver = UploadReceiver(config.output)

        return cls(
            config=config,
            gate=gate,
            coordinator=coordinator,
            payload=payload,
            checksums=checksums,
            receiver=receiver,
            upload_page=upload_page,
        )


def _render_http_error(error: HTTPException) -> Response:
    response = error.get_response()
    response.set_data(f"{error.code} {error.name}\n")
    response.content_type = "text/plain; charset=utf-8"
    return response


def create_app(context: ServerContext) -> Flask:
    app = Flask(__name__)

    @app.before_request
    def add_request_id() -> None:
        """Assign a request identifier for downstream logging."""

        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)

    @app.before_request
    def require_credentials() -> Optional[Response]:
        credentials = context.config.credentials
        if credentials is None:
            return None
        auth = request.authorization
        if (
            auth is not None
            and auth.type == "basic"
            and compare_digest(auth.username or "", credentials[0])
            and compare_digest(auth.password or "", credentials[1])
        ):
            return None
        lifecycle_logger.warning(
            "auth_failed method=%s path=%s", request.method, sanitize_log_value(request.path)
        )
        response = _render_http_error(Unauthorized())
        response.headers["WWW-Authenticate"] = f'Basic realm="{AUTH_REALM}"'
        return response

    @app.before_request
    def admit_request() -> None:
        if context.gate.admit(request.method):
            request.environ[ADMITTED_ENVIRON_KEY] = True

    @app.after_request
    def log_request_completion(response: Response) -> Response:
        """Emit lifecycle logs for every completed request."""

        lifecycle_logger.info(
            "request_completed remote=%s method=%s path=%s status=%d",
            request.remote_addr,
            request.method,
            sanitize_log_value(request.full_path.rstrip("?")),
            response.status_code,
        )
        return response

    @app.after_request
    def add_server_headers(response: Response) -> Response:
        response.headers["Server"] = SERVER_HEADER
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return _render_http_error(error)

    if context.config.receive:
        _register_receive_routes(app, context)
    else:
        _register_offer_routes(app, context)
    app.wsgi_app = _release_after_response(app.wsgi_app, context.gate)
    return app


def _release_after_response(wsgi_app, gate: AdmissionGate):
    """Release an admitted request once its response body has been sent."""

    def application(environ, start_response):
        app_iter = wsgi_app(environ, start_response)
        if environ.get(ADMITTED_ENVIRON_KEY):
            return ClosingIterator(app_iter, gate.release)
        return app_iter

    return application


def _register_offer_routes(app: Flask, context: ServerContext) -> None:
    payload = context.payload
    disposition = context.config.filename

    @app.route("/", methods=["GET"])
    def offer_payload():
        if payload.origin is Origin.STREAM:
            response = Response(
                stream_with_context(_stream_chunks(payload)),
                mimetype="application/octet-stream",
            )
        else:
            source = payload.path if payload.origin is Origin.DISK else payload.open()
            try:
                response = send_file(
                    source,
                    mimetype=mimetypes.guess_type(payload.base_name)[0] or "application/octet-stream",
                    conditional=False,
                    etag=False,
                )
            except FileNotFoundError:
                lifecycle_logger.warning("payload_missing path=%s", payload.path)
                abort(404)
            except OSError as error:
                lifecycle_logger.error("payload_open_failed path=%s error=%s", payload.path, error)
                abort(500)
        if disposition:
            quoted = disposition.replace("\\", "\\\\").replace('"', '\\"')
            response.headers["Content-Disposition"] = f'attachment; filename="{quoted}"'
        else:
            # send_file names path-backed responses inline on its own
            response.headers.pop("Content-Disposition", None)
        lifecycle_logger.info("payload_offered origin=%s", payload.origin.value)
        return response

    if context.checksums is None:
        return

    @app.route("/checksums", methods=["GET"])
    @app.route("/checksums/", methods=["GET"])
    def all_checksums():
        try:
            body = context.checksums.get_all()
        except ChecksumUnavailableError as error:
            lifecycle_logger.error("checksums_unavailable error=%s", error)
            abort(500)
        return Response(body, mimetype="text/plain")

    @app.route("/checksums/<algorithm>", methods=["GET"])
    def single_checksum(algorithm: str):
        try:
            body = context.checksums.get(algorithm)
        except UnknownAlgorithmError:
            lifecycle_logger.info("checksum_unknown algorithm=%s", sanitize_log_value(algorithm))
            abort(404)
        except ChecksumUnavailableError as error:
            lifecycle_logger.error("checksum_unavailable error=%s", error)
            abort(500)
        return Response(body, mimetype="text/plain")


def _stream_chunks(payload: Payload):
    source = payload.open()
    # read1 hands over whatever a pipe holds instead of waiting for a full chunk
    read = getattr(source, "read1", source.read)
    try:
        for chunk in iter(lambda: read(CHUNK_SIZE_BYTES), b""):
            yield chunk
    except OSError as error:
        # headers are already sent, the status cannot change any more
        lifecycle_logger.error("payload_stream_failed error=%s", error)
    finally:
        source.close()


def _register_receive_routes(app: Flask, context: ServerContext) -> None:
    @app.route("/", methods=["GET", "POST"])
    def receive_upload():
        if request.method == "GET":
            return Response(context.upload_page, mimetype="text/html")

        if request.mimetype != "multipart/form-data":
            lifecycle_logger.warning(
                "upload_rejected reason=not_multipart content_type=%s",
                sanitize_log_value(request.content_type or ""),
            )
            abort(400)
        boundary = request.mimetype_params.get("boundary")
        if not boundary:
            lifecycle_logger.warning("upload_rejected reason=missing_boundary")
            abort(400)

        try:
            saved = context.receiver.receive(request.stream, boundary.encode("latin-1"))
        except (MalformedBodyError, MissingFilenameError) as error:
            lifecycle_logger.warning("upload_failed reason=bad_request error=%s", sanitize_log_value(str(error)))
            abort(400)
        except (NameCollisionError, OSError) as error:
            lifecycle_logger.error("upload_failed reason=local_io error=%s", error)
            abort(500)

        lifecycle_logger.info("upload_completed parts=%d", len(saved))
        return Response("".join(f"{name}\n" for name in saved), mimetype="text/plain")
