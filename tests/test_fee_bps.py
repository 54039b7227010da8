from __future__ import annotations

import pytest

from creatorsetup.errors import LocalValidationError
from creatorsetup.provisioning.machine import fee_percent_to_bps
from creatorsetup.provisioning.session import Step
from creatorsetup.testing.flows import run_setup
from creatorsetup.testing.keys import deterministic_address


@pytest.mark.parametrize(
    "percent,bps",
    [
        (0, 0),
        (0.01, 1),
        (0.125, 13),
        (0.5, 50),
        (1, 100),
        (2.5, 250),
        (20, 2000),
    ],
)
def test_fee_percent_to_bps(percent: float, bps: int) -> None:
    assert fee_percent_to_bps(percent) == bps


def test_every_representable_bps_round_trips() -> None:
    for bps in range(0, 2001):
        assert fee_percent_to_bps(bps / 100) == bps


@pytest.mark.parametrize("fee", [20.01, 25, -0.01, -1, "abc", float("nan"), float("inf")])
def test_out_of_range_fee_is_rejected_before_any_ledger_call(machine, ledger, fee) -> None:
    run_setup(machine, until=Step.CREATE_AUTHORITY)
    calls = len(ledger.calls)

    with pytest.raises(LocalValidationError) as ei:
        machine.create_authority(name="Acme", fee_vault=deterministic_address("fee-vault"), fee_percent=fee)

    assert ei.value.code == "invalid_fee"
    assert len(ledger.calls) == calls
    assert machine.session.step == Step.CREATE_AUTHORITY


def test_boundary_fee_is_accepted(machine) -> None:
    s = run_setup(machine, until=Step.CREATE_COLLECTION, fee_percent=20)
    assert s.step == Step.CREATE_COLLECTION
