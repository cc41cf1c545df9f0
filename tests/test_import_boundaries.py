import ast
import subprocess
import sys
import textwrap
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]

# (package dir, forbidden import prefixes)
BOUNDARIES = [
    ("pipelinekit", ("shipyard",)),
    (
        "shipyard/foundation",
        (
            "shipyard.framework",
            "shipyard.domain",
            "shipyard.impl",
            "shipyard.image",
            "shipyard.runtime",
            "shipyard.stages",
            "shipyard.app",
        ),
    ),
    (
        "shipyard/framework",
        ("shipyard.impl", "shipyard.image", "shipyard.runtime", "shipyard.stages", "shipyard.app"),
    ),
    ("shipyard/domain", ("shipyard.impl", "shipyard.image", "shipyard.runtime", "shipyard.stages", "shipyard.app")),
    # Stages sit on top of impl here; impl itself never reaches back up.
    ("shipyard/impl", ("shipyard.image", "shipyard.runtime", "shipyard.stages", "shipyard.app")),
    ("shipyard/image", ("shipyard.impl", "shipyard.runtime", "shipyard.stages", "shipyard.app")),
    # The supervisor ships inside the image and must not pull in build code.
    ("shipyard/runtime", ("shipyard.impl", "shipyard.image", "shipyard.domain", "shipyard.stages", "shipyard.app")),
]


def _imports(path: Path):
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                yield f"import {alias.name}", alias.name
        elif isinstance(node, ast.ImportFrom):
            if node.module is None or node.level:
                continue
            yield f"from {node.module} import ...", node.module


@pytest.mark.parametrize("package,forbidden", BOUNDARIES, ids=[b[0] for b in BOUNDARIES])
def test_package_source_respects_layering(package, forbidden):
    offenders: list[str] = []
    for path in sorted((REPO_ROOT / package).rglob("*.py")):
        for label, module in _imports(path):
            if module.startswith(forbidden):
                offenders.append(f"{path.relative_to(REPO_ROOT)}: {label}")

    assert offenders == []


def test_importing_pipelinekit_modules_does_not_pull_in_shipyard():
    code = textwrap.dedent(
        """\
        import importlib
        import pkgutil
        import sys

        import pipelinekit as pkg

        for module in pkgutil.walk_packages(pkg.__path__, pkg.__name__ + "."):
            before = set(sys.modules)
            importlib.import_module(module.name)
            loaded = sorted(name for name in (set(sys.modules) - before) if name.startswith("shipyard"))
            if loaded:
                raise SystemExit(f"Importing {module.name} loaded forbidden modules: {loaded}")
        """
    )

    proc = subprocess.run(
        [sys.executable, "-c", code],
        capture_output=True,
        text=True,
        cwd=str(REPO_ROOT),
    )
    assert proc.returncode == 0, proc.stderr or proc.stdout
