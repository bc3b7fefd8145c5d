"""Environment variable utilities for dyncluster."""

from __future__ import annotations

import os
from configparser import ConfigParser
from typing import TYPE_CHECKING, Any

from dyncluster import utils
from dyncluster.core.errors import UserError
from dyncluster.settings import CONFIG_TEMPLATE

if TYPE_CHECKING:
    from dyncluster.core.context import DynClusterContext


class EnvironmentVariables(dict):
    """Dyncluster environment variables.

    Parameters
    ----------
    ctx : DynClusterContext
        An instantiated DynClusterContext object containing user input
        and context.

    Methods
    -------
    get(key, default=None)
        Get an environment variable. Always returns a string.
    get_int(key, default)
        Get an environment variable as an integer.
    get_float(key, default)
        Get an environment variable as a float.
    get_bool(key, default)
        Get an environment variable as a boolean.

    Examples
    --------
    >>> attempts = ctx.env.get_int("REBALANCE_ATTEMPTS", 5)

    Notes
    -----
    Values are combined from three sources with decreasing precedence:
    user-provided `KEY=VALUE` pairs, the OS environment, and the
    `[config]` section of the dyncluster.cfg file.
    """

    SHELL_SOURCE = [
        "DOCKER_HOST",
        "DYNCLUSTER_CREATOR",
        "DYNCLUSTER_EXPIRY",
        "DYNCLUSTER_NETWORK",
        "ENABLE_DINO_CERTS",
        "GHCR_TOKEN",
        "GHCR_USER",
        "REBALANCE_ATTEMPTS",
        "REBALANCE_SETTLE_SECONDS",
    ]
    SECRET_KEYS = ["GHCR_TOKEN"]

    def __init__(self, ctx: DynClusterContext) -> None:
        super().__init__()
        self._ctx = ctx
        self._parse_user_env_args()
        self._parse_os_env()
        self._parse_config_file()

    def get(self, key: Any, default: Any = None) -> str:
        """Return `key` as a string; unset keys without a default give ''."""
        value = super().get(key, default)
        return "" if value is None else str(value)

    def get_int(self, key: str, default: int) -> int:
        """Return `key` as an int, or `default` when unset.

        Raises
        ------
        UserError
            If the value is set but is not an integer.
        """
        raw = self.get(key)
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            raise UserError(
                f"Environment variable {key} must be an integer, got '{raw}'."
            ) from None

    def get_float(self, key: str, default: float) -> float:
        """Return `key` as a float, or `default` when unset."""
        raw = self.get(key)
        if not raw:
            return default
        try:
            return float(raw)
        except ValueError:
            raise UserError(
                f"Environment variable {key} must be a number, got '{raw}'."
            ) from None

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Return `key` as a bool, or `default` when unset."""
        raw = self.get(key)
        if not raw:
            return default
        return utils.str_to_bool(raw)

    def _strip_quotes(self, value: str) -> str:
        """Strip matching surrounding quotes from a config file value."""
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            return value[1:-1]
        return value

    def _parse_user_env_args(self) -> None:
        """Parse user-provided `KEY=VALUE` pairs (highest precedence)."""
        for env_var in self._ctx._user_env_args or []:
            k, v = utils.parse_key_value_pair(env_var, hard_fail=True)
            self[k.upper()] = str(v)

    def _parse_os_env(self) -> None:
        """Parse whitelisted variables from the user's shell."""
        for k, v in os.environ.items():
            k = k.upper()
            if k in self.SHELL_SOURCE and not self.get(k):
                self[k] = str(v)

    def _parse_config_file(self) -> None:
        """Parse the `[config]` section of the user's config file.

        Notes
        -----
        Existing values are not overridden. A missing file is ignored
        and a malformed one is reported with a warning.
        """
        path = self._ctx.config_file
        if not os.path.isfile(path):
            return

        parser = ConfigParser(interpolation=None)
        parser.__dict__["optionxform"] = str
        try:
            parser.read(path)
            entries = parser.items("config")
        except Exception as e:
            self._ctx.logger.warn(
                f"Ignoring config file {path}, it could not be parsed:\n{e}\n"
                f"Expected a file shaped like:\n{CONFIG_TEMPLATE}"
            )
            return
        for key, value in entries:
            key = key.upper()
            if value and not self.get(key):
                self[key] = self._strip_quotes(value)

    def _log_env_vars(self) -> None:
        """Log the registered variables at debug level, masking secrets."""
        if not self:
            return
        sorted_items = sorted(self.items())
        max_key_len = max(len(str(k)) for k, _ in sorted_items)
        env_lines = []
        for k, v in sorted_items:
            shown = "*****" if k in self.SECRET_KEYS and v else v
            env_lines.append(f"\t{k}{' ' * (max_key_len - len(k) + 4)}{shown}")
        self._ctx.logger.debug(
            "Registered environment variables:\n" + "\n".join(env_lines)
        )
