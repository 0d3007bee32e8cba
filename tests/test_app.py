"""Tests for the command line."""

import pytest

from kestrel import __version__
from kestrel.app import main, parse_args, run
from kestrel.config import Config
from kestrel.core import Account


def test_parse_args():
    args = parse_args(["--debug", "sync", "work", "home"])

    assert args.debug
    assert args.command == "sync"
    assert args.names == ["work", "home"]
    assert parse_args([]).command is None
    assert parse_args(["remove-account", "-y", "work"]).yes


def test_version(capsys):
    with pytest.raises(SystemExit) as excinfo:
        parse_args(["--version"])

    assert excinfo.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_paths(xdg_home, capsys):
    assert main(["--paths"]) == 0

    out = capsys.readouterr().out
    assert str(xdg_home / "data" / "kestrel" / "kestrel.db") in out


def test_invalid_config_exits_with_2(xdg_home, capsys):
    path = xdg_home / "broken.toml"
    path.write_text("[accounts.bad]\nemail = 'a@example.com'\nimap_security = 'tls'\n")

    assert main(["--config", str(path), "accounts"]) == 2
    assert "Config error" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_accounts_listing(xdg_home, capsys):
    config = Config(default_account="work")
    config.accounts["work"] = Account(name="work", email="me@work.example")

    assert await run(config, parse_args(["accounts"])) == 0

    out = capsys.readouterr().out
    assert out.startswith("* work")
    assert "me@work.example" in out
    assert "last sync: never (enabled)" in out


@pytest.mark.asyncio
async def test_accounts_listing_when_empty(xdg_home, capsys):
    assert await run(Config(), parse_args(["accounts"])) == 0

    assert "No accounts configured" in capsys.readouterr().out


def test_parse_search_args():
    args = parse_args(["search", "invoice", "--scope", "subject", "--limit", "5"])

    assert args.command == "search"
    assert args.query == "invoice"
    assert args.scope == "subject"
    assert args.limit == 5
    assert parse_args(["search", "invoice"]).scope == "all"
    assert parse_args(["drafts"]).name is None


@pytest.mark.asyncio
async def test_search_without_matches(xdg_home, capsys):
    assert await run(Config(), parse_args(["search", "invoice"])) == 0

    assert "No matches" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_drafts_listing_when_empty(xdg_home, capsys):
    assert await run(Config(), parse_args(["drafts"])) == 0

    assert "No drafts" in capsys.readouterr().out
