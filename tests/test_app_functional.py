import hashlib
import io
import os
import tempfile
import threading
import unittest
from pathlib import Path

from offer.app import SERVER_HEADER, ServerContext, _stream_chunks, create_app
from offer.config import UNLIMITED, OfferConfig
from offer.payload import Origin, Payload, resolve_file
from offer.shutdown import ShutdownState

DATA = b"hello world"


def memory_payload(data: bytes = DATA, name: str = "docs/hello.txt") -> Payload:
    return Payload(name=name, origin=Origin.MEMORY, buffer=data)


class OfferAppTests(unittest.TestCase):
    def _client(self, config: OfferConfig, payload: Payload):
        self.context = ServerContext.build(config, payload=payload)
        self.app = create_app(self.context)
        self.app.config.update(TESTING=True)
        return self.app.test_client()

    def test_serves_memory_payload(self):
        client = self._client(OfferConfig(), memory_payload())
        response = client.get("/", buffered=True)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, DATA)
        self.assertTrue(response.headers["Content-Type"].startswith("text/plain"))
        self.assertEqual(response.headers["Server"], SERVER_HEADER)
        self.assertNotIn("Content-Disposition", response.headers)

    def test_request_id_is_generated_or_echoed(self):
        client = self._client(OfferConfig(), memory_payload())
        generated = client.get("/", buffered=True)
        self.assertTrue(generated.headers.get("X-Request-ID"))
        echoed = client.get("/", headers={"X-Request-ID": "abc123"}, buffered=True)
        self.assertEqual(echoed.headers["X-Request-ID"], "abc123")

    def test_attachment_filename_is_advertised(self):
        client = self._client(OfferConfig(filename='quarterly "final".pdf'), memory_payload())
        response = client.get("/", buffered=True)
        self.assertEqual(
            response.headers["Content-Disposition"],
            'attachment; filename="quarterly \\"final\\".pdf"',
        )

    def test_unknown_content_type_falls_back_to_octet_stream(self):
        client = self._client(OfferConfig(), memory_payload(name="offer-1700000000"))
        response = client.get("/", buffered=True)
        self.assertEqual(response.headers["Content-Type"], "application/octet-stream")

    def test_budget_exhaustion_rejects_and_starts_drain(self):
        client = self._client(OfferConfig(count=2), memory_payload())
        self.assertEqual(client.get("/", buffered=True).status_code, 200)
        self.assertIsNone(self.context.coordinator.reason)
        self.assertEqual(client.get("/", buffered=True).status_code, 200)
        self.assertEqual(self.context.coordinator.reason, "requests exhausted")
        self.assertIs(self.context.coordinator.state, ShutdownState.DRAINING)

        rejected = client.get("/", buffered=True)
        self.assertEqual(rejected.status_code, 503)
        self.assertEqual(rejected.data, b"503 Service Unavailable\n")
        self.assertEqual(rejected.headers["Server"], SERVER_HEADER)

    def test_drain_waits_for_response_body(self):
        client = self._client(OfferConfig(count=1), memory_payload())
        response = client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(self.context.coordinator.reason)
        response.close()
        self.assertEqual(self.context.coordinator.reason, "requests exhausted")

    def test_concurrent_requests_over_budget(self):
        budget = 4
        self._client(OfferConfig(count=budget), memory_payload())
        start = threading.Barrier(budget + 1)
        statuses = []

        def fetch():
            client = self.app.test_client()
            start.wait(5)
            statuses.append(client.get("/", buffered=True).status_code)

        workers = [threading.Thread(target=fetch) for _ in range(budget + 1)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(5)

        self.assertEqual(sorted(statuses), [200] * budget + [503])
        self.assertEqual(self.context.coordinator.reason, "requests exhausted")

    def test_other_methods_are_not_counted(self):
        client = self._client(OfferConfig(count=1), memory_payload())
        response = client.post("/", buffered=True)
        self.assertEqual(response.status_code, 405)
        self.assertIn("GET", response.headers["Allow"])
        self.assertEqual(response.data, b"405 Method Not Allowed\n")
        self.assertEqual(self.context.gate.remaining, 1)

    def test_unknown_path_is_plain_404(self):
        client = self._client(OfferConfig(), memory_payload())
        response = client.get("/nothing/here", buffered=True)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data, b"404 Not Found\n")


class ChecksumRouteTests(unittest.TestCase):
    def setUp(self):
        self.context = ServerContext.build(OfferConfig(), payload=memory_payload())
        self.client = create_app(self.context).test_client()

    def _line(self, algorithm: str) -> str:
        return f"{algorithm} {hashlib.new(algorithm, DATA).hexdigest()} hello.txt\n"

    def test_single_checksum(self):
        response = self.client.get("/checksums/sha256", buffered=True)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_data(as_text=True), self._line("sha256"))
        self.assertTrue(response.headers["Content-Type"].startswith("text/plain"))

    def test_algorithm_is_case_insensitive(self):
        response = self.client.get("/checksums/MD5", buffered=True)
        self.assertEqual(response.get_data(as_text=True), self._line("md5"))

    def test_all_checksums_with_and_without_slash(self):
        expected = "".join(self._line(a) for a in ["md5", "sha1", "sha256", "sha512"])
        for path in ("/checksums", "/checksums/"):
            with self.subTest(path=path):
                response = self.client.get(path, buffered=True)
                self.assertEqual(response.status_code, 200)
                self.assertEqual(response.get_data(as_text=True), expected)
        self.assertEqual(self.context.checksums.computations, 4)

    def test_unknown_algorithm_is_404_and_not_cached(self):
        response = self.client.get("/checksums/crc32", buffered=True)
        self.assertEqual(response.status_code, 404)
        self.assertFalse(self.context.checksums.cached("crc32"))

    def test_disk_checksum_failure_is_500(self):
        with tempfile.TemporaryDirectory() as workdir:
            path = Path(workdir) / "big.bin"
            path.write_bytes(b"z" * 64)
            context = ServerContext.build(OfferConfig(), payload=resolve_file(str(path), 8))
            client = create_app(context).test_client()
            path.unlink()
            response = client.get("/checksums/sha1", buffered=True)
            self.assertEqual(response.status_code, 500)
            self.assertFalse(context.checksums.cached("sha1"))


class DiskPayloadTests(unittest.TestCase):
    def setUp(self):
        self.workdir = tempfile.TemporaryDirectory()
        self.path = Path(self.workdir.name) / "archive.tar"
        self.data = bytes(range(256)) * 64
        self.path.write_bytes(self.data)
        self.payload = resolve_file(str(self.path), 128)
        self.client = create_app(ServerContext.build(OfferConfig(), payload=self.payload)).test_client()

    def tearDown(self):
        self.workdir.cleanup()

    def test_serves_from_disk_on_every_request(self):
        self.assertIs(self.payload.origin, Origin.DISK)
        for _ in range(2):
            response = self.client.get("/", buffered=True)
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.data, self.data)
            self.assertNotIn("Content-Disposition", response.headers)

    def test_vanished_file_is_404(self):
        self.path.unlink()
        response = self.client.get("/", buffered=True)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data, b"404 Not Found\n")


class StreamPayloadTests(unittest.TestCase):
    def setUp(self):
        self.stdin = io.BytesIO(b"live " * 1000)
        payload = Payload(name="offer-1", origin=Origin.STREAM, stream=self.stdin)
        self.context = ServerContext.build(OfferConfig(stream=True, count=5), payload=payload)
        self.client = create_app(self.context).test_client()

    def test_stream_is_served_exactly_once(self):
        self.assertEqual(self.context.gate.remaining, 1)
        first = self.client.get("/", buffered=True)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.data, b"live " * 1000)
        self.assertTrue(self.stdin.closed)
        self.assertEqual(self.context.coordinator.reason, "requests exhausted")
        self.assertEqual(self.client.get("/", buffered=True).status_code, 503)

    def test_stream_forwards_data_before_a_full_chunk(self):
        read_fd, write_fd = os.pipe()
        reader = os.fdopen(read_fd, "rb")
        writer = os.fdopen(write_fd, "wb")
        chunks = _stream_chunks(Payload(name="offer-1", origin=Origin.STREAM, stream=reader))
        received = []
        consumer = threading.Thread(target=lambda: received.append(next(chunks)))

        writer.write(b"first line\n")
        writer.flush()
        consumer.start()
        consumer.join(5)
        self.assertEqual(received, [b"first line\n"])

        writer.close()
        self.assertEqual(list(chunks), [])
        self.assertTrue(reader.closed)

    def test_checksums_are_not_offered(self):
        self.assertIsNone(self.context.checksums)
        self.assertEqual(self.client.get("/checksums/md5", buffered=True).status_code, 404)


class BasicAuthTests(unittest.TestCase):
    def setUp(self):
        config = OfferConfig(count=1, credentials=("alice", "s3cret:pass"))
        self.context = ServerContext.build(config, payload=memory_payload())
        self.client = create_app(self.context).test_client()

    def test_missing_credentials_are_challenged(self):
        response = self.client.get("/", buffered=True)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers["WWW-Authenticate"], 'Basic realm="offer"')
        self.assertEqual(response.data, b"401 Unauthorized\n")
        self.assertEqual(self.context.gate.remaining, 1)

    def test_wrong_password_is_rejected(self):
        response = self.client.get("/", auth=("alice", "nope"), buffered=True)
        self.assertEqual(response.status_code, 401)

    def test_valid_credentials_are_admitted(self):
        response = self.client.get("/", auth=("alice", "s3cret:pass"), buffered=True)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, DATA)
        self.assertEqual(self.context.gate.remaining, 0)


class ReceiveAppTests(unittest.TestCase):
    PAGE = b"<!doctype html><form method=post></form>"

    def setUp(self):
        self.workdir = tempfile.TemporaryDirectory()
        self.root = Path(self.workdir.name)

    def tearDown(self):
        self.workdir.cleanup()

    def _client(self, count: int = UNLIMITED, output: str = None):
        config = OfferConfig(receive=True, count=count, output=output or str(self.root))
        self.context = ServerContext.build(config, upload_page=self.PAGE)
        return create_app(self.context).test_client()

    def test_upload_page_is_served_verbatim(self):
        client = self._client(count=1)
        response = client.get("/", buffered=True)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, self.PAGE)
        self.assertTrue(response.headers["Content-Type"].startswith("text/html"))
        self.assertEqual(self.context.gate.remaining, 1)

    def test_upload_is_saved_and_counted(self):
        client = self._client(count=1)
        response = client.post(
            "/",
            data={"file": (io.BytesIO(b"uploaded bytes"), "sample.txt")},
            content_type="multipart/form-data",
            buffered=True,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_data(as_text=True), f"{self.root / 'sample.txt'}\n")
        self.assertEqual((self.root / "sample.txt").read_bytes(), b"uploaded bytes")
        self.assertEqual(self.context.coordinator.reason, "requests exhausted")

    def test_uploads_to_fixed_path_never_overwrite(self):
        target = self.root / "out.txt"
        client = self._client(output=str(target))
        for body in (b"first", b"second"):
            response = client.post(
                "/",
                data={"file": (io.BytesIO(body), "ignored.txt")},
                content_type="multipart/form-data",
                buffered=True,
            )
            self.assertEqual(response.status_code, 200)
        self.assertEqual(target.read_bytes(), b"first")
        self.assertEqual((self.root / "out-1.txt").read_bytes(), b"second")

    def test_non_multipart_post_is_rejected(self):
        client = self._client()
        response = client.post("/", data=b"raw", content_type="application/octet-stream", buffered=True)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(list(self.root.iterdir()), [])

    def test_part_without_filename_is_rejected(self):
        client = self._client()
        response = client.post(
            "/",
            data={"comment": "just text"},
            content_type="multipart/form-data",
            buffered=True,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(list(self.root.iterdir()), [])

    def test_checksum_routes_do_not_exist(self):
        client = self._client()
        self.assertEqual(client.get("/checksums", buffered=True).status_code, 404)


if __name__ == "__main__":
    unittest.main()
