"""Tests for router classification."""

import logging

import pytest

from limit_order_agent.execution.router_selector import RouterSelector, RouterType

BONDING_CURVE_ROUTER = "0x6F6B8F1a20703309951a5127c45B49b1CD981A22"
DEX_ROUTER = "0x0B79d71AE99528D1dB24A4148b5f4F865cc2b137"


@pytest.fixture
def selector() -> RouterSelector:
    return RouterSelector(dex_router=DEX_ROUTER, bonding_curve_router=BONDING_CURVE_ROUTER)


def test_dex_router_matches_case_insensitively(selector: RouterSelector) -> None:
    selection = selector.select(DEX_ROUTER.lower())
    assert selection.type == RouterType.DEX
    assert selection.address == DEX_ROUTER.lower()


def test_bonding_curve_router(selector: RouterSelector) -> None:
    assert selector.select(BONDING_CURVE_ROUTER.upper().replace("0X", "0x")).type == RouterType.BONDING_CURVE


def test_unknown_router_defaults_to_bonding_curve_with_warning(
    selector: RouterSelector, caplog: pytest.LogCaptureFixture
) -> None:
    unknown = "0x" + "9" * 40
    with caplog.at_level(logging.WARNING, logger="limit_order_agent.execution.router_selector"):
        selection = selector.select(unknown)
    assert selection.type == RouterType.BONDING_CURVE
    assert "Unrecognized router" in caplog.text


def test_known_routers_do_not_warn(selector: RouterSelector, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="limit_order_agent.execution.router_selector"):
        selector.select(BONDING_CURVE_ROUTER)
        selector.select(DEX_ROUTER)
    assert caplog.text == ""
