from __future__ import annotations

import ast
from pathlib import Path


def test_control_plane_does_not_import_cli_layer() -> None:
    root = Path(__file__).resolve().parents[1] / "agent_foundry" / "control_plane"
    for path in root.rglob("*.py"):
        tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                names = [alias.name for alias in node.names]
            elif isinstance(node, ast.ImportFrom):
                names = [node.module or ""]
            else:
                continue
            for name in names:
                root_name = name.split(".")[0]
                hit = root_name == "typer" or name == "agent_foundry.cli"
                assert not hit, f"{path} imports forbidden dependency: {name}"
