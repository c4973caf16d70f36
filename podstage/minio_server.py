"""
Embedded object-store server.

The orchestrator spawns a local minio server over its context directory. It
is the rendezvous point of every stage: workers fetch their inputs from it
and publish artifacts and metadata back to it. Top-level directories of the
served tree are buckets; files below them are keys.

The server is defined early (so remote file references can point at it) but
only started after setup has finished writing into the tree.
"""

import logging
import secrets
import shutil
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Optional

from minio import Minio

from podstage.errors import SetupError
from podstage.termination import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_START_TIMEOUT = 60.0

# Server stderr lines kept for startup error messages
STDERR_TAIL_LINES = 20


class MinioServer:
    """
    A minio server process serving a directory.

    Attributes:
        directory: Directory served as the object tree
        host: Address clients (workers) use to reach the server
        port: Listening port
        access_key: Generated access key
        secret_key: Generated secret key
    """

    def __init__(
        self,
        directory: Path | str,
        host: str = "127.0.0.1",
        port: int = 9000,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        binary: str = "minio",
    ):
        self.directory = Path(directory)
        self.host = host or "127.0.0.1"
        self.port = port
        self.access_key = access_key or f"podstage-{secrets.token_hex(4)}"
        self.secret_key = secret_key or secrets.token_urlsafe(24)
        self._binary = binary
        self._process: Optional[subprocess.Popen] = None
        self._client: Optional[Minio] = None
        self._reader: Optional[threading.Thread] = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def client(self) -> Minio:
        """Return an authenticated client for this server."""
        if self._client is None:
            self._client = Minio(
                endpoint=self.endpoint,
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=False,
            )
        return self._client

    def start(self, token: Optional[CancellationToken] = None, timeout: float = DEFAULT_START_TIMEOUT) -> None:
        """
        Start the server and wait until it answers requests.

        Args:
            token: Cancellation token; cancelling aborts the wait
            timeout: Seconds to wait for the server to come up

        Raises:
            SetupError: If the binary is missing or the server never comes up
        """
        binary = shutil.which(self._binary)
        if binary is None:
            raise SetupError(f"Object-store server binary '{self._binary}' not found in PATH")

        args = [binary, "server", "--quiet", "--address", f":{self.port}", str(self.directory)]
        env = {
            "MINIO_ROOT_USER": self.access_key,
            "MINIO_ROOT_PASSWORD": self.secret_key,
            "PATH": "/usr/local/bin:/usr/bin:/bin",
        }
        logger.info("Starting object-store server on %s serving %s", self.endpoint, self.directory)
        try:
            self._process = subprocess.Popen(
                args, env=env, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise SetupError(f"Failed to start object-store server: {e}") from e

        self._stderr_tail.clear()
        self._reader = threading.Thread(
            target=self._drain_stderr, args=(self._process.stderr,), name="minio-stderr", daemon=True,
        )
        self._reader.start()
        self._wait_ready(token, timeout)

    def _drain_stderr(self, stream) -> None:
        # The pipe must be read for the whole run or the server blocks on write
        for raw in iter(stream.readline, b""):
            line = raw.decode(errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)
                logger.debug("minio: %s", line)

    def _wait_ready(self, token: Optional[CancellationToken], timeout: float) -> None:
        deadline = time.monotonic() + timeout
        last_error: Optional[Exception] = None
        while time.monotonic() < deadline:
            if not self.running:
                if self._reader is not None:
                    self._reader.join(timeout=5)
                stderr = "\n".join(self._stderr_tail)
                raise SetupError(f"Object-store server exited during startup: {stderr}")
            if token is not None and token.cancelled():
                self.kill()
                raise SetupError("Cancelled while waiting for the object-store server")
            try:
                self.client().list_buckets()
                logger.info("Object-store server is ready")
                return
            except Exception as e:  # server not accepting connections yet
                last_error = e
            time.sleep(0.5)

        self.kill()
        raise SetupError(f"Object-store server did not become ready: {last_error}") from last_error

    def ensure_bucket_exists(self, bucket: str) -> None:
        """Create bucket if the server does not have it yet."""
        client = self.client()
        if not client.bucket_exists(bucket_name=bucket):
            logger.info("Creating bucket %s", bucket)
            client.make_bucket(bucket_name=bucket)
        (self.directory / bucket).mkdir(parents=True, exist_ok=True)

    def kill(self) -> None:
        """Stop the server process."""
        if self._process is None:
            return
        if self._process.poll() is None:
            logger.info("Stopping object-store server")
            self._process.terminate()
            try:
                self._process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()
        if self._reader is not None:
            self._reader.join(timeout=5)
            self._reader = None
        if self._process.stderr is not None:
            self._process.stderr.close()
        self._process = None

    def to_dict(self) -> dict[str, Any]:
        """Connection details handed to workers."""
        return {
            "host": self.host,
            "port": self.port,
            "access_key": self.access_key,
            "secret_key": self.secret_key,
        }

    def __repr__(self) -> str:
        return f"MinioServer(endpoint={self.endpoint}, directory={self.directory})"
