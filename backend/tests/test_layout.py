"""Tests for the installed top-level layout.

core, repositories, services, schemas and cli install as top-level names.
These tests fail when pyproject.toml drifts from the backend tree, or when
another distribution in the environment shadows one of the names.
"""

import importlib
import tomllib
from pathlib import Path

import pytest

pytestmark = pytest.mark.unit

BACKEND_DIR = Path(__file__).resolve().parent.parent
TOP_LEVEL_NAMES = ["cli", "core", "repositories", "schemas", "services"]


def _setuptools_config() -> dict:
    pyproject = BACKEND_DIR.parent / "pyproject.toml"
    return tomllib.loads(pyproject.read_text(encoding="utf-8"))["tool"]["setuptools"]


def test_install_list_matches_backend_tree():
    config = _setuptools_config()
    declared = set(config["packages"]) | set(config["py-modules"])
    on_disk = {
        path.name for path in BACKEND_DIR.iterdir() if (path / "__init__.py").exists()
    } | {path.stem for path in BACKEND_DIR.glob("*.py")}

    assert config["package-dir"] == {"": "backend"}
    assert declared == on_disk == set(TOP_LEVEL_NAMES)


@pytest.mark.parametrize("name", TOP_LEVEL_NAMES)
def test_top_level_name_resolves_to_backend(name):
    module = importlib.import_module(name)

    assert Path(module.__file__).resolve().is_relative_to(BACKEND_DIR)
