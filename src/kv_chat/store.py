"""Transcript persistence over a pluggable key-value capability.

Backends:
    MemoryKV        in-process dict, lost on restart
    DiskKV          one JSON file per conversation, atomic replace on write
    CloudflareKV    Workers KV namespace through the Cloudflare REST API

``TranscriptStore`` sits on top of any of them and is the only thing the
session coordinator talks to. Mutation discipline is read whole value,
append in memory, write whole value back. There is no locking or version
check, so concurrent writers to one conversation are last-write-wins.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote

import httpx

from .config import resolve_secret
from .errors import MissingBindings, StoreUnavailable
from .messages import Transcript, decode_transcript, encode_transcript

logger = logging.getLogger(__name__)

CLOUDFLARE_API = "https://api.cloudflare.com/client/v4"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[bytes]:
        ...

    async def put(self, key: str, value: bytes) -> None:
        ...


# -----------------------------
# Helpers
# -----------------------------
def _safe_key(name: str) -> str:
    # Readable but filesystem-safe; a digest suffix keeps mangled keys distinct.
    s = re.sub(r"[^\w.\-@]+", "_", name)[:96] or "_"
    if s != name:
        s = f"{s}-{hashlib.sha256(name.encode('utf-8')).hexdigest()[:12]}"
    return s


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("wb", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


# -----------------------------
# Backends
# -----------------------------
class MemoryKV:
    """Dict-backed store for tests and throwaway runs."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None) -> None:
        self.data: Dict[str, bytes] = dict(initial or {})

    async def get(self, key: str) -> Optional[bytes]:
        return self.data.get(key)

    async def put(self, key: str, value: bytes) -> None:
        self.data[key] = bytes(value)


class DiskKV:
    """One file per key under ``data_dir``.

    Layout:
        data_dir/
          <key>.json

    Writes go through a temp file and ``os.replace`` so a reader sees either
    the old value or the new one, never a partial file.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / f"{_safe_key(key)}.json"

    def _read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read, key)

    async def put(self, key: str, value: bytes) -> None:
        await asyncio.to_thread(_atomic_write_bytes, self._path(key), value)


class CloudflareKV:
    """Workers KV namespace accessed over the Cloudflare REST API."""

    def __init__(
        self,
        account_id: str,
        namespace_id: str,
        api_token: str,
        *,
        base_url: str = CLOUDFLARE_API,
        timeout: Optional[float] = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.account_id = account_id
        self.namespace_id = namespace_id
        self._headers = {"Authorization": f"Bearer {api_token}"}
        self._base = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    def _url(self, key: str) -> str:
        return (
            f"{self._base}/accounts/{self.account_id}/storage/kv/namespaces/"
            f"{self.namespace_id}/values/{quote(key, safe='')}"
        )

    async def get(self, key: str) -> Optional[bytes]:
        resp = await self._client.get(self._url(key), headers=self._headers)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.content

    async def put(self, key: str, value: bytes) -> None:
        resp = await self._client.put(
            self._url(key),
            content=value,
            headers={**self._headers, "Content-Type": "application/octet-stream"},
        )
        resp.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


# -----------------------------
# Transcript adapter
# -----------------------------
class TranscriptStore:
    """Maps a conversation identifier to its serialized transcript."""

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    async def load(self, conversation_id: str) -> Transcript:
        """Return the stored transcript, or an empty one for an unknown id."""
        try:
            raw = await self.kv.get(conversation_id)
        except (OSError, httpx.HTTPError) as e:
            raise StoreUnavailable("Transcript read failed", detail=str(e)) from e
        if raw is None:
            return ()
        try:
            return decode_transcript(raw)
        except ValueError as e:
            raise StoreUnavailable(
                f"Stored transcript for {conversation_id!r} is unreadable", detail=str(e)
            ) from e

    async def save(self, conversation_id: str, transcript: Transcript) -> None:
        """Overwrite the stored value with the full transcript."""
        try:
            await self.kv.put(conversation_id, encode_transcript(transcript))
        except (OSError, httpx.HTTPError) as e:
            raise StoreUnavailable("Transcript write failed", detail=str(e)) from e


def create_store(cfg: Dict[str, Any]) -> TranscriptStore:
    """Create a TranscriptStore from the ``store`` section of the config."""
    store_cfg = (cfg or {}).get("store", {}) or {}
    backend = str(store_cfg.get("backend", "disk")).lower()

    if backend == "memory":
        kv: KeyValueStore = MemoryKV()
    elif backend == "disk":
        kv = DiskKV(str(store_cfg.get("data_dir") or "data/transcripts"))
    elif backend == "cloudflare_kv":
        account_id = resolve_secret(store_cfg, "account_id")
        namespace_id = store_cfg.get("namespace_id")
        api_token = resolve_secret(store_cfg, "api_token")
        if not (account_id and namespace_id and api_token):
            raise MissingBindings(
                "Cloudflare KV store is not configured",
                detail="store.account_id, store.namespace_id and store.api_token are required",
            )
        kv = CloudflareKV(
            account_id,
            str(namespace_id),
            api_token,
            base_url=str(store_cfg.get("base_url") or CLOUDFLARE_API),
            timeout=store_cfg.get("timeout", 30.0),
        )
    else:
        raise MissingBindings(f"Unknown store backend: {backend!r}")

    logger.info("Transcript store backend: %s", backend)
    return TranscriptStore(kv)
