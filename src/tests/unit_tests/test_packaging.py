"""Unit tests for the package metadata."""

import ast
import re
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[3]
PACKAGE = ROOT / "src" / "dyncluster"


def _install_requires() -> list[str]:
    tree = ast.parse((ROOT / "setup.py").read_text())
    for node in ast.walk(tree):
        if isinstance(node, ast.keyword) and node.arg == "install_requires":
            return ast.literal_eval(node.value)
    raise AssertionError("setup.py declares no install_requires")


def _imported_roots() -> set[str]:
    roots = set()
    for path in PACKAGE.rglob("*.py"):
        for node in ast.walk(ast.parse(path.read_text())):
            if isinstance(node, ast.Import):
                roots.update(a.name.split(".")[0] for a in node.names)
            elif isinstance(node, ast.ImportFrom) and node.module and not node.level:
                roots.add(node.module.split(".")[0])
    return roots


class TestSetup:
    """Test suite for setup.py."""

    def test_shebang(self):
        """Test the script can be executed directly."""
        first = (ROOT / "setup.py").read_text().splitlines()[0]
        assert first == "#!/usr/bin/env python3"

    @pytest.mark.parametrize("requirement", _install_requires())
    def test_requirement_is_used(self, requirement):
        """Test every unconditional requirement is imported by the package."""
        if ";" in requirement:
            pytest.skip("platform-specific requirement")
        name = re.split(r"[<>=!~ \[]", requirement, maxsplit=1)[0]
        assert name in _imported_roots()

    def test_colorama_is_windows_only(self):
        """Test colorama is only pulled in where click colours through it."""
        colorama = [r for r in _install_requires() if r.startswith("colorama")]
        assert colorama == ["colorama; platform_system == 'Windows'"]
