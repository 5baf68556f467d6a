"""Durable local storage for generated results and uploaded inputs.

Files live flat in one directory and are served under a fixed web prefix:
``{results_dir}/{prefix}_{job_id}.{ext}`` <-> ``{url_prefix}/{prefix}_{job_id}.{ext}``.
"""

import asyncio
import os
import re
from typing import Optional

from app.config import settings

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: str) -> str:
    """Strip directory parts and unsafe characters from a client-supplied filename."""
    base = os.path.basename(name or "") or "upload"
    return _UNSAFE_CHARS.sub("_", base)


class LocalResultStore:
    """Writes result/input files keyed by job id and maps them to web paths."""

    def __init__(self, base_dir: Optional[str] = None, url_prefix: Optional[str] = None):
        self._base_dir = os.path.abspath(base_dir or settings.results_dir)
        self._url_prefix = (url_prefix or settings.results_url_prefix).rstrip("/")
        os.makedirs(self._base_dir, exist_ok=True)

    @property
    def base_dir(self) -> str:
        return self._base_dir

    @staticmethod
    def result_name(prefix: str, job_id: str, extension: str) -> str:
        return f"{prefix}_{job_id}.{extension.lstrip('.')}"

    @staticmethod
    def input_name(job_id: str, slot: str, filename: str) -> str:
        return f"input_{job_id}_{slot}_{safe_filename(filename)}"

    def path_for(self, filename: str) -> str:
        """Absolute path of a stored file; rejects names that escape the directory."""
        path = os.path.abspath(os.path.join(self._base_dir, filename))
        if os.path.dirname(path) != self._base_dir:
            raise ValueError(f"Invalid result filename: {filename!r}")
        return path

    def url_for(self, filename: str) -> str:
        return f"{self._url_prefix}/{filename}"

    def exists(self, filename: str) -> bool:
        try:
            return os.path.isfile(self.path_for(filename))
        except ValueError:
            return False

    def _write(self, filename: str, data: bytes) -> str:
        path = self.path_for(filename)
        tmp_path = f"{path}.part"
        with open(tmp_path, "wb") as dst:
            dst.write(data)
        os.replace(tmp_path, path)
        return path

    async def write_bytes(self, filename: str, data: bytes) -> str:
        """Write atomically (temp file + rename) off the event loop; returns the path."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._write, filename, data)

    async def read_bytes(self, path: str) -> bytes:
        def _read() -> bytes:
            with open(path, "rb") as src:
                return src.read()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _read)
