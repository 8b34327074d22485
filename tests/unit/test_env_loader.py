from __future__ import annotations

from pathlib import Path

import pytest

from devstack.services.env_loader import load_environment, parse_env_file


@pytest.mark.unit
def test_parse_env_file_ignores_comments_and_blank_lines(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("A=1\n#c\n\nB=x=y\n")

    assert parse_env_file(env_file) == {"A": "1", "B": "x=y"}


@pytest.mark.unit
def test_parse_env_file_later_entries_win_and_bare_keys_are_dropped(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("A=1\nJUSTKEY\nA=2\n")

    assert parse_env_file(env_file) == {"A": "2"}


@pytest.mark.unit
def test_load_environment_overlays_file_on_base(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("STRIPE_PRIVATE_KEY=sk_file\nRESEND_FROM_EMAIL=shop@example.com\n")

    result = load_environment(env_file, base={"STRIPE_PRIVATE_KEY": "sk_shell", "PATH": "/usr/bin"})

    assert result.loaded is True
    assert result.values == {
        "STRIPE_PRIVATE_KEY": "sk_file",
        "RESEND_FROM_EMAIL": "shop@example.com",
        "PATH": "/usr/bin",
    }


@pytest.mark.unit
def test_load_environment_falls_back_to_base_when_file_missing(tmp_path: Path) -> None:
    base = {"PATH": "/usr/bin"}

    result = load_environment(tmp_path / "missing.env", base=base)

    assert result.loaded is False
    assert result.values == base
    assert result.values is not base


@pytest.mark.unit
def test_parse_env_file_keeps_values_literal(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text('A=1\nB=pre${A}post\nC="val # note"\nD=val # note\n')

    assert parse_env_file(env_file) == {
        "A": "1",
        "B": "pre${A}post",
        "C": "val # note",
        "D": "val",
    }
