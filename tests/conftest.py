from __future__ import annotations

import os
import sys
from dataclasses import replace
from pathlib import Path

import pytest

# Ensure local "src/" takes precedence over any globally-installed "creatorsetup" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Tests opt in to configuration explicitly.
    for k in list(os.environ):
        if k.startswith("CREATORSETUP_"):
            monkeypatch.delenv(k, raising=False)


@pytest.fixture
def cfg():
    from creatorsetup.config import load_network_config

    return replace(load_network_config("local"), confirm_timeout_s=5.0, confirm_poll_s=0.5)


@pytest.fixture
def ledger(cfg):
    from creatorsetup.ledger.memory import InMemoryLedger

    return InMemoryLedger(program_id=cfg.program_id)


@pytest.fixture
def wallet():
    from creatorsetup.testing.keys import operator_wallet

    return operator_wallet()


@pytest.fixture
def machine(ledger, wallet, cfg):
    from creatorsetup.testing.flows import new_machine

    return new_machine(ledger, wallet, cfg)
