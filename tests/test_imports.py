"""Import-order tests for the db_bridge package.

Each module is imported first in a fresh interpreter, so a cycle between
subpackages fails here even when other tests have already loaded the
package.
"""

import os
import subprocess
import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).parent.parent / "src"

MODULES = [
    "db_bridge",
    "db_bridge.adapters",
    "db_bridge.adapters.base",
    "db_bridge.adapters.async_engine",
    "db_bridge.schema",
    "db_bridge.schema.capabilities",
    "db_bridge.schema.discovery",
    "db_bridge.schema.introspector",
    "db_bridge.schema.normalizer",
    "db_bridge.migration",
    "db_bridge.migration.executor",
    "db_bridge.migration.planner",
    "db_bridge.migration.service",
    "db_bridge.migration.lock",
    "db_bridge.migration.tracker",
    "db_bridge.advisor",
    "db_bridge.config",
    "db_bridge.factory",
    "db_bridge.cli",
]


def _import_fresh(*modules: str) -> subprocess.CompletedProcess:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_DIR), env.get("PYTHONPATH")]))
    code = "; ".join(f"import {module}" for module in modules)
    return subprocess.run([sys.executable, "-c", code], capture_output=True, text=True, env=env)


# ============================================================================
# No circular imports
# ============================================================================


class TestNoCircularImports:
    """Verify every module imports cleanly as the first thing loaded."""

    @pytest.mark.parametrize("module", MODULES)
    def test_imported_first(self, module: str) -> None:
        result = _import_fresh(module)
        assert result.returncode == 0, result.stderr

    def test_schema_then_adapters(self) -> None:
        result = _import_fresh("db_bridge.schema", "db_bridge.adapters")
        assert result.returncode == 0, result.stderr

    def test_public_api(self) -> None:
        """Names exported from the package root resolve."""
        from db_bridge import DatabaseHandle, Dialect, MigrationPlan, migrate  # noqa: F401

        assert MigrationPlan.__dataclass_fields__["enable_constraints"]
