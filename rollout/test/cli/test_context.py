from __future__ import annotations

from pathlib import Path

import pytest
import typer

from rollout.cli.context import build_context
from rollout.core.config import DeployConfig
from rollout.core.errors import ErrorCode


def test_default_config_is_optional(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    ctx = build_context()

    assert ctx.config == DeployConfig()
    assert ctx.config_path == tmp_path / "rollout.toml"


def test_reads_default_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "rollout.toml").write_text('root = "/opt/app"\n', encoding="utf-8")

    assert build_context().config.root == Path("/opt/app")


def test_explicit_config_must_exist(tmp_path: Path) -> None:
    with pytest.raises(typer.Exit) as exc:
        build_context(tmp_path / "missing.toml")

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)


def test_invalid_config(tmp_path: Path) -> None:
    path = tmp_path / "rollout.toml"
    path.write_text("[health]\nport = 99999\n", encoding="utf-8")

    with pytest.raises(typer.Exit) as exc:
        build_context(path)

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)
