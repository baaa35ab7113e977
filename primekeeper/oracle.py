"""RedStone price payload appended to the calldata of every sweep.

Prime accounts read prices from signed data packages carried at the end of
the calldata. The packages come from the RedStone gateways
(``/data-packages/latest/<data service id>``) and are serialized into the
on-chain layout::

    data package*  unsigned metadata  metadata size (3)  package count (2)  marker (9)

where each data package is::

    (feed id (32) value (32))*  timestamp ms (6)  value size (4)  point count (3)  signature (65)
"""
from __future__ import annotations

import base64
import logging
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from eth_utils import to_bytes

from . import __version__
from .config import ChainConfig, KeeperConfig, Resource
from .errors import PayloadUnavailable

logger = logging.getLogger(__name__)

REDSTONE_MARKER = bytes.fromhex("000002ed57011e0000")
ALL_FEEDS = "___ALL_FEEDS___"
DEFAULT_DECIMALS = 8
VALUE_BYTE_SIZE = 32
SIGNATURE_BYTE_SIZE = 65


def _uint(value: int, size: int) -> bytes:
    return int(value).to_bytes(size, "big")


def feed_id_bytes(feed_id: str) -> bytes:
    raw = feed_id.encode("utf-8")
    if len(raw) > 32:
        raise PayloadUnavailable(f"data feed id {feed_id!r} is longer than 32 bytes")
    return raw.ljust(32, b"\x00")


def value_bytes(point: Dict[str, Any]) -> bytes:
    value = point["value"]
    if isinstance(value, str):
        # non-numeric points arrive base64 encoded
        raw = base64.b64decode(value)
    else:
        decimals = int(point.get("decimals", DEFAULT_DECIMALS))
        scaled = (Decimal(str(value)) * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        if scaled < 0:
            raise PayloadUnavailable(f"negative value for {point.get('dataFeedId')}")
        raw = _uint(int(scaled), VALUE_BYTE_SIZE)
    if len(raw) > VALUE_BYTE_SIZE:
        raise PayloadUnavailable(f"value of {point.get('dataFeedId')} does not fit {VALUE_BYTE_SIZE} bytes")
    return raw.rjust(VALUE_BYTE_SIZE, b"\x00")


def signature_bytes(signature: str) -> bytes:
    if signature.startswith("0x"):
        raw = to_bytes(hexstr=signature)
    else:
        raw = base64.b64decode(signature)
    if len(raw) != SIGNATURE_BYTE_SIZE:
        raise PayloadUnavailable(f"signature is {len(raw)} bytes, expected {SIGNATURE_BYTE_SIZE}")
    return raw


def serialize_package(package: Dict[str, Any]) -> bytes:
    points = package.get("dataPoints") or []
    if not points:
        raise PayloadUnavailable(f"data package {package.get('dataPackageId')} has no data points")
    body = b"".join(feed_id_bytes(p["dataFeedId"]) + value_bytes(p) for p in points)
    return (body
            + _uint(package["timestampMilliseconds"], 6)
            + _uint(VALUE_BYTE_SIZE, 4)
            + _uint(len(points), 3)
            + signature_bytes(package["signature"]))


def serialize_payload(packages: Sequence[Dict[str, Any]], metadata: str = "") -> bytes:
    meta = metadata.encode("utf-8")
    return (b"".join(serialize_package(p) for p in packages)
            + meta
            + _uint(len(meta), 3)
            + _uint(len(packages), 2)
            + REDSTONE_MARKER)


def pick_packages(response: Dict[str, List[Dict[str, Any]]], unique_signers: int) -> List[Dict[str, Any]]:
    """Newest package from each of ``unique_signers`` distinct signers, per feed."""
    feeds = {k: v for k, v in response.items() if k != ALL_FEEDS} or response
    if not feeds:
        raise PayloadUnavailable("gateway returned no data packages")
    picked = []
    for feed, packages in sorted(feeds.items()):
        signers = set()
        chosen = []
        for pkg in sorted(packages or [], key=lambda p: p.get("timestampMilliseconds", 0), reverse=True):
            signer = (pkg.get("signerAddress") or "").lower()
            if signer in signers:
                continue
            signers.add(signer)
            chosen.append(pkg)
            if len(chosen) == unique_signers:
                break
        if len(chosen) < unique_signers:
            raise PayloadUnavailable(f"{feed}: {len(chosen)} signers available, {unique_signers} required")
        picked.extend(chosen)
    return picked


class RedstonePayloadProvider:
    """``payload_provider`` for ``ActionExecutor``; one instance per chain."""

    def __init__(self, data_service_id: str, urls: Sequence[str], unique_signers: int = 3, *,
                 timeout: float = 10.0, max_age: float = 15.0,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic):
        if not urls:
            raise PayloadUnavailable("no RedStone gateway URL configured")
        self.data_service_id = data_service_id
        self.urls = tuple(u.rstrip("/") for u in urls)
        self.unique_signers = unique_signers
        self.timeout = timeout
        self.max_age = max_age
        self.session = session or requests.Session()
        self._clock = clock
        self._cached: Optional[bytes] = None
        self._fetched_at = 0.0

    @classmethod
    def for_chain(cls, chain: ChainConfig, config: KeeperConfig) -> Optional["RedstonePayloadProvider"]:
        if not chain.data_service_id:
            return None
        return cls(chain.data_service_id, config.oracle_urls, config.unique_signers, timeout=config.call_timeout)

    def fetch(self) -> Dict[str, List[Dict[str, Any]]]:
        errors = []
        for url in self.urls:
            try:
                r = self.session.get(f"{url}/data-packages/latest/{self.data_service_id}", timeout=self.timeout)
                r.raise_for_status()
                return r.json()
            except (requests.RequestException, ValueError) as e:
                logger.warning(f"RedStone gateway {url} failed: {e}")
                errors.append(f"{url}: {e}")
        raise PayloadUnavailable(f"{self.data_service_id}: every gateway failed ({'; '.join(errors)})")

    def payload(self) -> bytes:
        now = self._clock()
        if self._cached is None or now - self._fetched_at > self.max_age:
            packages = pick_packages(self.fetch(), self.unique_signers)
            self._cached = serialize_payload(packages, f"{__version__}#primekeeper")
            self._fetched_at = now
            logger.debug(f"RedStone payload: {len(packages)} data packages, {len(self._cached)} bytes")
        return self._cached

    def __call__(self, subject: str, resource: Resource) -> bytes:
        return self.payload()
