"""Runs opcache commands on a PHP-FPM pool over FastCGI."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import Any, Callable

from ..config import CacheToolConfig, LocalConfig
from ..exceptions import CacheToolError
from .fastcgi import FastCGIClient

logger = logging.getLogger(__name__)

# PHP-FPM only executes files it can see, so each command is written out as a
# throwaway script and requested by path.
_SCRIPT_TEMPLATE = """<?php
$errors = [];
set_error_handler(function ($errno, $errstr) use (&$errors) {{
    $errors[] = $errstr;
    return true;
}});
$result = {expression};
header('Content-Type: application/json');
echo json_encode(['result' => $result, 'errors' => $errors]);
"""

OPCACHE_RESET = "function_exists('opcache_reset') ? opcache_reset() : false"
OPCACHE_ENABLED = "function_exists('opcache_reset') && (bool) ini_get('opcache.enable')"


class CacheToolClient:
    """Executes PHP expressions on one FastCGI pool and decodes their JSON result."""

    def __init__(
        self,
        host: str,
        port: int | None = None,
        *,
        chroot: str | None = None,
        script_dir: str | None = None,
        timeout: float = 10.0,
    ):
        self._fastcgi = FastCGIClient(host, port, timeout=timeout)
        self._chroot = os.path.abspath(chroot) if chroot else None
        self._script_dir = script_dir or tempfile.gettempdir()

    @classmethod
    def from_config(cls, host: str, config: CacheToolConfig, port: int | None = None) -> CacheToolClient:
        return cls(
            host,
            config.port if port is None else port,
            chroot=config.chroot,
            script_dir=config.script_dir,
            timeout=config.timeout,
        )

    @property
    def address(self) -> str:
        return self._fastcgi.address

    def opcache_reset(self) -> bool:
        return bool(self.run(OPCACHE_RESET))

    def opcache_enabled(self) -> bool:
        return bool(self.run(OPCACHE_ENABLED))

    def run(self, expression: str) -> Any:
        """Evaluate a PHP expression on the pool and return its decoded value."""
        path = self._write_script(expression)
        try:
            response = self._fastcgi.request(self._params(path))
        finally:
            self._remove_script(path)

        if response.status >= 400:
            detail = (response.stderr or response.body[:200]).decode("utf-8", "replace").strip()
            raise CacheToolError(f"{self.address} answered HTTP {response.status}: {detail}")

        try:
            payload = json.loads(response.body)
        except ValueError as exc:
            raise CacheToolError(f"Unexpected response from {self.address}: {response.body[:200]!r}") from exc

        if not isinstance(payload, dict) or "result" not in payload:
            raise CacheToolError(f"Unexpected response from {self.address}: {payload!r}")

        for message in payload.get("errors") or []:
            logger.warning("PHP reported on %s: %s", self.address, message, extra={"host": self.address})
        return payload["result"]

    def _write_script(self, expression: str) -> str:
        try:
            fd, path = tempfile.mkstemp(prefix="opcache-reset-", suffix=".php", dir=self._script_dir)
        except OSError as exc:
            raise CacheToolError(f"Could not write script to {self._script_dir}: {exc}") from exc
        try:
            with os.fdopen(fd, "w") as f:
                f.write(_SCRIPT_TEMPLATE.format(expression=expression))
            os.chmod(path, 0o644)
        except OSError as exc:
            self._remove_script(path)
            raise CacheToolError(f"Could not write script to {self._script_dir}: {exc}") from exc
        return path

    def _remove_script(self, path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove script %s: %s", path, exc)

    def _script_path(self, path: str) -> str:
        """Translate a local path into the path the chrooted pool sees."""
        if self._chroot and path.startswith(self._chroot + os.sep):
            return path[len(self._chroot):]
        return path

    def _params(self, path: str) -> dict[str, str]:
        script = self._script_path(path)
        return {
            "GATEWAY_INTERFACE": "FastCGI/1.0",
            "REQUEST_METHOD": "GET",
            "SCRIPT_FILENAME": script,
            "SCRIPT_NAME": "/" + os.path.basename(script),
            "DOCUMENT_ROOT": os.path.dirname(script),
            "QUERY_STRING": "",
            "CONTENT_LENGTH": "0",
            "SERVER_SOFTWARE": "opcache-fleet-reset",
            "SERVER_PROTOCOL": "HTTP/1.1",
            "REMOTE_ADDR": "127.0.0.1",
        }


class RemoteResetClient:
    """Resets the opcache of a remote fleet member. Best effort, never retries."""

    def __init__(
        self,
        config: CacheToolConfig,
        client_factory: Callable[[str], CacheToolClient] | None = None,
    ):
        self._config = config
        self._factory = client_factory if client_factory is not None else self._default_client

    def _default_client(self, host: str) -> CacheToolClient:
        return CacheToolClient.from_config(host, self._config)

    def reset(self, host: str) -> bool:
        client = self._factory(host)
        try:
            ok = client.opcache_reset()
        except CacheToolError as exc:
            logger.warning("Remote opcache reset on %s failed: %s", host, exc, extra={"host": host})
            return False

        if ok:
            logger.info("Remote opcache reset on %s succeeded", host, extra={"host": host})
        else:
            logger.warning("Remote opcache reset on %s returned false", host, extra={"host": host})
        return ok


class FastCGILocalCache:
    """The opcache of the local PHP-FPM pool, reset synchronously."""

    def __init__(self, local: LocalConfig, cachetool: CacheToolConfig, client: CacheToolClient | None = None):
        self._enabled = local.enabled
        self._client = client if client is not None else CacheToolClient(
            local.host,
            local.port,
            chroot=cachetool.chroot,
            script_dir=cachetool.script_dir,
            timeout=cachetool.timeout,
        )

    def is_enabled(self) -> bool:
        """True when configured on and the pool reports opcache_reset() available and enabled."""
        if not self._enabled:
            return False
        try:
            return self._client.opcache_enabled()
        except CacheToolError as exc:
            logger.warning("Could not probe local opcache on %s: %s", self._client.address, exc)
            return False

    def reset_local(self) -> bool:
        try:
            ok = self._client.opcache_reset()
        except CacheToolError as exc:
            logger.error("Local opcache reset failed: %s", exc, extra={"host": self._client.address})
            return False
        logger.info("Local opcache reset %s", "succeeded" if ok else "returned false",
                    extra={"host": self._client.address})
        return ok
