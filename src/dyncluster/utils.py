"""Small helpers shared across dyncluster."""

from __future__ import annotations

import difflib
from typing import Any, Mapping, Optional

from dyncluster.core.errors import UserError

TRUTHY = frozenset({"1", "true", "yes", "y", "on"})


def generate_identifier(identifiers: Optional[Mapping[str, Any]] = None) -> str:
    """
    Render `{"cluster": ..., "node": ...}` as a bracketed log tag.

    Examples
    --------
    >>> generate_identifier({"cluster": "a1b2c3d4", "node": "cbdynnode-1"})
    '[cluster: a1b2c3d4] [node: cbdynnode-1]'
    """
    return " ".join(f"[{k}: {v}]" for k, v in (identifiers or {}).items())


def parse_key_value_pair(pair: str, hard_fail: bool = False) -> tuple[str, str]:
    """
    Split an environment assignment such as `REBALANCE_ATTEMPTS=3`.

    Parameters
    ----------
    pair : str
        The assignment. Whitespace around the key and value is dropped.
    hard_fail : bool, optional
        Raise `UserError` for a malformed assignment instead of returning
        `("", "")`.

    Returns
    -------
    tuple[str, str]
        The key and the value.
    """
    key, sep, value = (part.strip() for part in pair.strip().partition("="))
    if sep and key:
        return key, value
    if hard_fail:
        raise UserError(
            f"Invalid key-value pair: {pair.strip()}", "Use the form KEY=VALUE."
        )
    return "", ""


def closest_match_or_error(
    name: str, valid_names: list[str], context: str = "item"
) -> str:
    """
    Return `name` if it is one of `valid_names`.

    Otherwise raise a `UserError` naming the `context` (e.g. "service")
    and, when one is close enough, suggesting the nearest valid name:

    >>> closest_match_or_error("idx", ["kv", "index"], "service")
    UserError: Service 'idx' not found. Did you mean 'index'?
    """
    if name in valid_names:
        return name
    close = difflib.get_close_matches(name, valid_names, n=1)
    hint = f" Did you mean '{close[0]}'?" if close else ""
    raise UserError(f"{context.capitalize()} '{name}' not found.{hint}")


def str_to_bool(value: Any) -> bool:
    return str(value).strip().lower() in TRUTHY
