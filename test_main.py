"""
Tests for the command-line entry point.
"""

from unittest.mock import AsyncMock

import pytest

import main
from models import CoordinatedResult


def test_read_urls(tmp_path, monkeypatch):
    monkeypatch.delenv(main.URLS_ENV_VAR, raising=False)
    urls_file = tmp_path / "urls.txt"
    urls_file.write_text("# targets\nhttps://a.example.com/jobs\n\n  https://b.example.com/careers  \n")

    assert main.read_urls(["https://c.example.com"], str(urls_file)) == [
        "https://c.example.com",
        "https://a.example.com/jobs",
        "https://b.example.com/careers",
    ]


def test_read_urls_from_env(tmp_path, monkeypatch):
    urls_file = tmp_path / "urls.txt"
    urls_file.write_text("https://a.example.com/jobs\n")
    monkeypatch.setenv(main.URLS_ENV_VAR, str(urls_file))
    assert main.read_urls([], None) == ["https://a.example.com/jobs"]


def test_main_requires_urls(monkeypatch):
    monkeypatch.delenv(main.URLS_ENV_VAR, raising=False)
    with pytest.raises(SystemExit):
        main.main([])


def test_main_prints_results(monkeypatch, capsys):
    results = [
        CoordinatedResult(success=True, source="fresh"),
        CoordinatedResult(success=False, source="scraping-error", error="boom"),
    ]
    monkeypatch.setattr(main, "run_batch", AsyncMock(return_value=results))

    exit_code = main.main(["https://a.example.com", "https://b.example.com"])

    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 2
    assert '"source": "fresh"' in lines[0]
    assert '"url": "https://b.example.com"' in lines[1]
    assert exit_code == 1
