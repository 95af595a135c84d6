"""Tests for the command-line entry point."""

from __future__ import annotations

import asyncio
import io
import runpy
from unittest.mock import patch

import pytest
from conftest import FakeDocumentSource, FakeFeedSource
from rich.console import Console

from arxiv_offline.cli import build_actionable_error, build_parser, main, run_command
from arxiv_offline.config import SyncConfig
from arxiv_offline.errors import UpstreamError
from arxiv_offline.services.interfaces import AppServices


class _NullClient:
    async def head(self, *_args, **_kwargs) -> None:
        return None

    async def __aenter__(self) -> _NullClient:
        return self

    async def __aexit__(self, *_args) -> bool:
        return False


@pytest.fixture
def services(make_paper) -> AppServices:
    feed = FakeFeedSource(
        [
            make_paper(arxiv_id="2401.00001", title="Alpha", authors=["Ada"]),
            make_paper(arxiv_id="2401.00002", title="Beta", authors=["Bob"]),
        ],
        total_results=2,
    )
    return AppServices(feed=feed, documents=FakeDocumentSource([b"%PDF", b"-1.4"]))


@pytest.fixture
def run_cli(tmp_path, services):
    config = SyncConfig(categories=["cs.AI"], data_dir=str(tmp_path / "data"))

    def _run(*argv: str) -> int:
        with patch("arxiv_offline.cli.build_default_app_services", return_value=services):
            return main(
                list(argv),
                load_config_fn=lambda: config,
                configure_logging_fn=lambda _debug: None,
                client_factory=_NullClient,
            )

    return _run


def test_feed_fetches_and_prints_table(run_cli, services, capsys) -> None:
    assert run_cli("feed") == 0
    out = capsys.readouterr().out
    assert "Alpha" in out
    assert "Beta" in out
    assert len(services.feed.calls) == 1


def test_feed_offline_shows_cached_snapshot(run_cli, services, capsys) -> None:
    run_cli("feed")
    capsys.readouterr()

    assert run_cli("--offline", "feed") == 0
    captured = capsys.readouterr()
    assert "Alpha" in captured.out
    assert "offline" in captured.err
    assert len(services.feed.calls) == 1


def test_feed_local_filter(run_cli, capsys) -> None:
    run_cli("feed")
    capsys.readouterr()

    assert run_cli("feed", "--no-fetch", "--filter", "bet") == 0
    out = capsys.readouterr().out
    assert "Beta" in out
    assert "Alpha" not in out


def test_feed_upstream_failure_without_cache(run_cli, services, capsys) -> None:
    services.feed.error = UpstreamError("arXiv API returned 503", status_code=503)
    assert run_cli("feed") == 1
    err = capsys.readouterr().err
    assert "Could not fetch the feed." in err
    assert "arXiv API returned 503" in err


def test_bookmark_then_reading_list(run_cli, capsys) -> None:
    run_cli("feed")
    assert run_cli("bookmark", "arxiv:2401.00002") == 0
    assert "Bookmarked Beta" in capsys.readouterr().out

    assert run_cli("reading-list") == 0
    out = capsys.readouterr().out
    assert "Beta" in out
    assert "Alpha" not in out


def test_status_and_note(run_cli, capsys) -> None:
    run_cli("feed")
    assert run_cli("status", "arxiv:2401.00001", "read") == 0
    assert run_cli("note", "arxiv:2401.00001", "check appendix") == 0
    out = capsys.readouterr().out
    assert "Marked Alpha as read" in out
    assert "Saved note for Alpha" in out


def test_status_rejects_unknown_value(run_cli) -> None:
    with pytest.raises(SystemExit):
        run_cli("status", "arxiv:2401.00001", "done")


def test_bookmark_unknown_item(run_cli, capsys) -> None:
    assert run_cli("bookmark", "arxiv:missing") == 1
    assert "Could not bookmark." in capsys.readouterr().err


def test_pdf_download_then_cache(run_cli, services, tmp_path, capsys) -> None:
    run_cli("feed")
    target = tmp_path / "out.pdf"

    assert run_cli("pdf", "arxiv:2401.00001", "--output", str(target)) == 0
    assert target.read_bytes() == b"%PDF-1.4"
    assert "from network" in capsys.readouterr().out

    assert run_cli("--offline", "pdf", "arxiv:2401.00001") == 0
    assert "from cache" in capsys.readouterr().out
    assert services.documents.opened == ["https://arxiv.org/pdf/2401.00001.pdf"]

    assert run_cli("cache-stats") == 0
    assert "Cached documents: 1" in capsys.readouterr().out

    assert run_cli("evict", "--all") == 0
    assert "Evicted 1 cached documents" in capsys.readouterr().out


def test_pdf_offline_miss(run_cli, capsys) -> None:
    run_cli("feed")
    assert run_cli("--offline", "pdf", "arxiv:2401.00002") == 1
    assert "not cached" in capsys.readouterr().err


def test_evict_requires_id_or_all(run_cli, capsys) -> None:
    assert run_cli("evict") == 1
    assert "pass an ID or --all" in capsys.readouterr().err


def test_parser_requires_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_build_actionable_error() -> None:
    assert build_actionable_error("open PDF", why="disk full.", next_step="free space") == (
        "Could not open PDF.\nWhy: disk full.\nNext step: free space."
    )


def test_main_module_calls_sys_exit_with_main_return_value() -> None:
    with (
        patch("arxiv_offline.cli.main", return_value=7) as main_mock,
        patch("sys.exit", side_effect=SystemExit) as exit_mock,
        pytest.raises(SystemExit),
    ):
        runpy.run_module("arxiv_offline.__main__", run_name="__main__")

    main_mock.assert_called_once_with()
    exit_mock.assert_called_once_with(7)


@pytest.mark.asyncio
async def test_watch_refreshes_until_cancelled(tmp_path, services) -> None:
    config = SyncConfig(categories=["cs.AI"], data_dir=str(tmp_path / "data"))
    args = build_parser().parse_args(["watch"])
    buffer = io.StringIO()

    with patch("arxiv_offline.cli.build_default_app_services", return_value=services):
        task = asyncio.create_task(
            run_command(
                args, config, client_factory=_NullClient, console=Console(file=buffer)
            )
        )
        for _ in range(200):
            if "2 papers" in buffer.getvalue():
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert len(services.feed.calls) == 1
    assert "2 papers" in buffer.getvalue()
