from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
DAGS = ROOT / "dags"
TESTS = Path(__file__).resolve().parent
for p in (DAGS, TESTS):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from fakes import FakeConnection  # noqa: E402


@pytest.fixture()
def journal() -> list:
    return []


@pytest.fixture()
def src(journal) -> FakeConnection:
    return FakeConnection("source", journal)


@pytest.fixture()
def dst(journal) -> FakeConnection:
    return FakeConnection("destination", journal)
