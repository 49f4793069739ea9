"""Shared fixtures: fake DVB device trees and fake frontends.

The real frontends need /dev/dvb and a DVB driver, so the collector tests run
against in-memory frontends that implement the same interface as
``DVBFrontend`` (context manager, readStatus, getStats, getInfo).
"""

from __future__ import annotations

from pathlib import Path

import pytest

from dvb_exporter.constants import DeviceIdentity, DTVStatCommand, FrontendInfo, ScaledStatistic
from dvb_exporter.frontend import decodeStatus, FrontendIOError, FrontendOpenError


class FakeFrontend:
    """In-memory stand-in for DVBFrontend."""

    def __init__(
        self,
        status_mask: int = 0x1F,
        stats: list[tuple[DTVStatCommand, ScaledStatistic]] | None = None,
        info: FrontendInfo | None = None,
        status_error: Exception | None = None,
        stats_error: Exception | None = None,
    ) -> None:
        self.status_mask = status_mask
        self.stats = stats or []
        self.info = info
        self.status_error = status_error
        self.stats_error = stats_error
        self.closed = False
        self.close_calls = 0

    def __enter__(self) -> FakeFrontend:
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True
        self.close_calls += 1

    def readStatus(self):
        if self.status_error is not None:
            raise self.status_error
        return decodeStatus(self.status_mask)

    def getStats(self):
        if self.stats_error is not None:
            raise self.stats_error
        return list(self.stats)

    def getInfo(self) -> FrontendInfo:
        if self.info is None:
            raise FrontendIOError("Failed to ioctl: FE_GET_INFO (errno: 25)")
        return self.info


class FakeOpener:
    """Frontend opener that hands out FakeFrontends by identity."""

    def __init__(self, frontends: dict[tuple[int, int], FakeFrontend]) -> None:
        self.frontends = frontends
        self.opened: list[DeviceIdentity] = []

    def __call__(self, identity: DeviceIdentity) -> FakeFrontend:
        self.opened.append(identity)
        frontend = self.frontends.get((identity.adapter, identity.frontend))
        if frontend is None:
            raise FrontendOpenError(f"Failed to open tuner device: {identity} (No such file or directory)")
        return frontend


@pytest.fixture
def make_device_tree(tmp_path: Path):
    """Build a /dev/dvb-like directory tree: {adapter: [frontend, ...]}."""

    def _make(layout: dict[int, list[int]], extra_entries: tuple[str, ...] = ()) -> Path:
        root = tmp_path / "dvb"
        root.mkdir()
        for adapter, frontends in layout.items():
            adapter_dir = root / f"adapter{adapter}"
            adapter_dir.mkdir()
            for name in ("demux0", "dvr0", "net0"):
                (adapter_dir / name).touch()
            for frontend in frontends:
                (adapter_dir / f"frontend{frontend}").touch()
        for name in extra_entries:
            (root / name).mkdir()
        return root

    return _make
