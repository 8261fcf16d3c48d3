"""Factory contract ABI fragments.

Only the events the reconciler consumes and the view functions it reads are
listed here; the full factory ABI also carries the trading entry points used
by the agent-facing write path.
"""

from __future__ import annotations

from typing import Any

from eth_utils import keccak


def _event(name: str, inputs: list[tuple[str, str, bool]]) -> dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in inputs],
    }


TOKEN_CREATED_ABI = _event(
    "TokenCreated",
    [
        ("token", "address", True),
        ("creator", "address", True),
        ("name", "string", False),
        ("symbol", "string", False),
        ("timestamp", "uint256", False),
    ],
)

TOKENS_PURCHASED_ABI = _event(
    "TokensPurchased",
    [
        ("token", "address", True),
        ("buyer", "address", True),
        ("ethIn", "uint256", False),
        ("tokensOut", "uint256", False),
        ("fee", "uint256", False),
        ("newReserveETH", "uint256", False),
        ("newReserveTokens", "uint256", False),
    ],
)

TOKENS_SOLD_ABI = _event(
    "TokensSold",
    [
        ("token", "address", True),
        ("seller", "address", True),
        ("tokensIn", "uint256", False),
        ("ethOut", "uint256", False),
        ("newReserveETH", "uint256", False),
        ("newReserveTokens", "uint256", False),
    ],
)

TOKEN_GRADUATED_ABI = _event(
    "TokenGraduated",
    [
        ("token", "address", True),
        ("pool", "address", True),
        ("ethLiquidity", "uint256", False),
        ("tokenLiquidity", "uint256", False),
        ("positionId", "uint256", False),
    ],
)

FACTORY_EVENTS_ABI: list[dict[str, Any]] = [
    TOKEN_CREATED_ABI,
    TOKENS_PURCHASED_ABI,
    TOKENS_SOLD_ABI,
    TOKEN_GRADUATED_ABI,
]

FACTORY_VIEW_ABI: list[dict[str, Any]] = [
    {
        "name": "getTokenInfo",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}],
        "outputs": [
            {"name": "creator", "type": "address"},
            {"name": "reserveETH", "type": "uint256"},
            {"name": "reserveTokens", "type": "uint256"},
            {"name": "creatorFees", "type": "uint256"},
            {"name": "graduated", "type": "bool"},
            {"name": "pool", "type": "address"},
            {"name": "positionId", "type": "uint256"},
        ],
    },
]


def event_signature(event_abi: dict[str, Any]) -> str:
    """Canonical `Name(type1,type2,...)` string for an event ABI entry."""
    name = event_abi.get("name")
    inputs = event_abi.get("inputs", [])
    if not isinstance(name, str) or not isinstance(inputs, list):
        raise ValueError("Invalid event ABI: missing name/inputs")
    return f"{name}({','.join(i['type'] for i in inputs)})"


def event_topic(event_abi: dict[str, Any]) -> bytes:
    """topic0 = keccak(signature)."""
    return keccak(text=event_signature(event_abi))
