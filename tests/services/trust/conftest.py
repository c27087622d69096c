from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from anchorid.services.trust import TrustControlPlane
from trust_support import FakeClock, write_config


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_plane(tmp_path: Path, clock: FakeClock) -> Callable[..., TrustControlPlane]:
    planes: list[TrustControlPlane] = []

    def factory(**overrides: Any) -> TrustControlPlane:
        config_path = write_config(tmp_path / f"config-{len(planes)}.json", **overrides)
        plane = TrustControlPlane(db_path=tmp_path / "trust.sqlite", config_path=config_path, clock=clock)
        planes.append(plane)
        return plane

    yield factory
    for plane in planes:
        plane.close()


@pytest.fixture()
def plane(make_plane) -> TrustControlPlane:
    return make_plane()
