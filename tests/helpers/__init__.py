"""Test helpers for clmm-keeper test suite"""

from tests.helpers.chain_stubs import (
    CLMM_PACKAGE,
    REGISTRY_PACKAGE,
    START_MS,
    TOKEN_X,
    TOKEN_Y,
    VAULT_PACKAGE,
    FakeChainGateway,
    FakeClock,
    make_snapshot,
    move_object,
    pool_json,
    position_field_json,
    registered_position_json,
    reward_info_json,
    tick_bits,
    vault_json,
)

__all__ = [
    "CLMM_PACKAGE",
    "REGISTRY_PACKAGE",
    "START_MS",
    "TOKEN_X",
    "TOKEN_Y",
    "VAULT_PACKAGE",
    "FakeChainGateway",
    "FakeClock",
    "make_snapshot",
    "move_object",
    "pool_json",
    "position_field_json",
    "registered_position_json",
    "reward_info_json",
    "tick_bits",
    "vault_json",
]
