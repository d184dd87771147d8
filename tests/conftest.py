"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from helpers import FakeClock, FakeSurface


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_surface() -> FakeSurface:
    return FakeSurface()
