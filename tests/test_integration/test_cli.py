"""End-to-end CLI tests: auth profile lifecycle, doctor, request and download.

The Typer app is driven through :class:`typer.testing.CliRunner`; network
access is replaced by :class:`httpx.MockTransport` injected into the
dispatcher the ``request`` and ``download`` commands construct.
"""

from __future__ import annotations

import functools
import json
import os
import stat
from pathlib import Path

import httpx
import pytest
from typer.testing import CliRunner

from ascli import __version__
from ascli.app import app
from ascli.client.dispatcher import RequestDispatcher
from ascli.config import load_config
from ascli.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
)

runner = CliRunner()

ISSUER = "69a6de7e-0000-47e3-e053-5b8c7c11a4d1"


def _login(key_file: Path, name: str = "work", *extra: str):
    return runner.invoke(
        app,
        [
            "auth",
            "login",
            "--name",
            name,
            "--key-id",
            "ABC123",
            "--issuer-id",
            ISSUER,
            "--private-key",
            str(key_file),
            *extra,
        ],
    )


@pytest.fixture
def logged_in(isolated_config: Path, key_file: Path) -> Path:
    result = _login(key_file)
    assert result.exit_code == 0, result.output
    return isolated_config


@pytest.fixture
def api(monkeypatch: pytest.MonkeyPatch):
    """Route the commands' dispatcher through a recording MockTransport.

    Returns a dict with the queued ``responses`` and the captured ``requests``.
    """
    state: dict = {"responses": [], "requests": []}

    def handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(request)
        return state["responses"].pop(0)

    transport = httpx.MockTransport(handler)
    monkeypatch.setattr(
        "ascli.commands.api.RequestDispatcher",
        functools.partial(
            RequestDispatcher,
            transport=transport,
            download_transport=transport,
            sleep=lambda delay: None,
        ),
    )
    return state


class TestGlobalOptions:
    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"ascli {__version__}" in result.output

    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert "auth" in result.output
        assert "request" in result.output


class TestAuthLifecycle:
    def test_login_writes_config_when_bypassed(self, isolated_config: Path, key_file: Path) -> None:
        result = _login(key_file)
        assert result.exit_code == 0, result.output
        assert f'Saved profile "work" to {isolated_config}.' in result.output

        cfg = load_config(isolated_config)
        assert cfg.default_key_name == "work"
        assert cfg.find("work").private_key_path == str(key_file.resolve())
        assert stat.S_IMODE(os.stat(isolated_config).st_mode) == 0o600
        # Only the path is stored, never the key material.
        assert "PRIVATE KEY" not in isolated_config.read_text()

    def test_login_rejects_invalid_key(self, isolated_config: Path, rsa_key_file: Path) -> None:
        result = _login(rsa_key_file)
        assert result.exit_code == EXIT_AUTH_FAILURE
        assert "ECDSA" in result.output
        assert not isolated_config.exists()

    def test_login_rejects_blank_name(self, isolated_config: Path, key_file: Path) -> None:
        result = _login(key_file, "   ")
        assert result.exit_code == EXIT_INVALID_USAGE

    def test_status_lists_profiles(self, logged_in: Path) -> None:
        result = runner.invoke(app, ["--plain", "auth", "status"])
        assert result.exit_code == 0, result.output
        assert f"work\tABC123\t{ISSUER}\tconfig\tyes" in result.output
        assert 'Active credential: "work" (config)' in result.output

    def test_status_without_profiles(self, isolated_config: Path) -> None:
        result = runner.invoke(app, ["auth", "status"])
        assert result.exit_code == 0
        assert "No stored profiles." in result.output
        assert "No usable credential" in result.output

    def test_status_reports_partial_environment(
        self, logged_in: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ASC_KEY_ID", "ENVKEY")
        result = runner.invoke(app, ["auth", "status"])
        assert "No usable credential" in result.output
        assert "incomplete" in result.output

    def test_logout(self, logged_in: Path) -> None:
        result = runner.invoke(app, ["auth", "logout", "--name", "work"])
        assert result.exit_code == 0
        assert 'Removed profile "work".' in result.output
        assert load_config(logged_in).keys == []

        again = runner.invoke(app, ["auth", "logout", "--name", "work"])
        assert again.exit_code == 0
        assert 'No stored profile named "work".' in again.output


class TestAuthDoctor:
    def test_healthy(self, logged_in: Path) -> None:
        result = runner.invoke(app, ["--plain", "auth", "doctor"])
        assert result.exit_code == 0, result.output
        assert "Storage" in result.output
        assert "[OK] work - complete" in result.output
        assert "Summary:" in result.output

    def test_fix_permissions(self, logged_in: Path, key_file: Path) -> None:
        os.chmod(key_file, 0o644)
        result = runner.invoke(app, ["--plain", "auth", "doctor"])
        assert result.exit_code == 0
        assert "[WARN]" in result.output
        assert f'Run: chmod 600 "{key_file.resolve()}"' in result.output

        fixed = runner.invoke(app, ["--plain", "auth", "doctor", "--fix"])
        assert fixed.exit_code == 0
        assert "(fixed)" in fixed.output
        assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o600

    def test_missing_key_fails(self, logged_in: Path, key_file: Path) -> None:
        key_file.unlink()
        result = runner.invoke(app, ["--plain", "auth", "doctor"])
        assert result.exit_code == EXIT_GENERIC_FAILURE
        assert "file not found" in result.output

    def test_json_report(self, logged_in: Path) -> None:
        result = runner.invoke(app, ["--json", "auth", "doctor"])
        assert result.exit_code == 0
        report = json.loads(result.output)
        assert [s["title"] for s in report["sections"]] == [
            "Storage",
            "Profiles",
            "Private Keys",
            "Environment",
            "Temp Files",
        ]


class TestRequestCommand:
    def test_get(self, logged_in: Path, api: dict) -> None:
        api["responses"].append(
            httpx.Response(200, json={"data": [{"type": "apps", "id": "1"}]})
        )
        result = runner.invoke(app, ["--json", "request", "GET", "/v1/apps", "--query", "limit=5"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"data": [{"type": "apps", "id": "1"}]}
        request = api["requests"][0]
        assert request.url.params["limit"] == "5"
        assert request.headers["Authorization"].startswith("Bearer ")

    def test_paginate(self, logged_in: Path, api: dict) -> None:
        api["responses"].extend(
            [
                httpx.Response(
                    200,
                    json={"data": [{"type": "apps", "id": "1"}], "links": {"next": "/v1/apps?cursor=2"}},
                ),
                httpx.Response(200, json={"data": [{"type": "apps", "id": "2"}], "links": {}}),
            ]
        )
        result = runner.invoke(app, ["--json", "request", "GET", "/v1/apps", "--paginate"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert [item["id"] for item in data["data"]] == ["1", "2"]
        assert len(api["requests"]) == 2

    def test_post_body(self, logged_in: Path, api: dict) -> None:
        api["responses"].append(httpx.Response(201, json={"data": {"type": "apps", "id": "9"}}))
        body = '{"data": {"type": "apps"}}'
        result = runner.invoke(app, ["--json", "request", "post", "/v1/apps", "--body", body])
        assert result.exit_code == 0, result.output
        assert api["requests"][0].method == "POST"
        assert json.loads(api["requests"][0].content) == {"data": {"type": "apps"}}

    def test_not_found_exit_code(self, logged_in: Path, api: dict) -> None:
        api["responses"].append(
            httpx.Response(
                404,
                json={"errors": [{"code": "NOT_FOUND", "title": "Not found", "detail": "No app 1"}]},
            )
        )
        result = runner.invoke(app, ["request", "GET", "/v1/apps/1"])
        assert result.exit_code == EXIT_NOT_FOUND
        assert "Error: Not found: No app 1" in result.output

    def test_unknown_profile(self, logged_in: Path, api: dict) -> None:
        result = runner.invoke(app, ["--profile", "nope", "request", "GET", "/v1/apps"])
        assert result.exit_code == EXIT_AUTH_FAILURE
        assert "nope" in result.output
        assert api["requests"] == []

    def test_paginate_requires_get(self, logged_in: Path, api: dict) -> None:
        result = runner.invoke(app, ["request", "DELETE", "/v1/apps/1", "--paginate"])
        assert result.exit_code == EXIT_INVALID_USAGE

    def test_bad_query(self, logged_in: Path, api: dict) -> None:
        result = runner.invoke(app, ["request", "GET", "/v1/apps", "--query", "novalue"])
        assert result.exit_code == EXIT_INVALID_USAGE
        assert "key=value" in result.output

    def test_off_origin_url_rejected(self, logged_in: Path, api: dict) -> None:
        result = runner.invoke(app, ["request", "GET", "https://evil.example.com/v1/apps"])
        assert result.exit_code == EXIT_INVALID_USAGE
        assert api["requests"] == []


class TestDownloadCommand:
    def test_download(self, isolated_config: Path, tmp_path: Path, api: dict) -> None:
        api["responses"].append(httpx.Response(200, content=b"report-bytes"))
        target = tmp_path / "out" / "report.gz"
        result = runner.invoke(
            app, ["download", "https://iosapps.itunes.apple.com/r.gz", "--output", str(target)]
        )
        assert result.exit_code == 0, result.output
        assert target.read_bytes() == b"report-bytes"
        assert "Saved 12 bytes" in result.output
        assert "Authorization" not in api["requests"][0].headers

    def test_download_streams_to_file(self, isolated_config: Path, tmp_path: Path, api: dict) -> None:
        def chunks():
            for _ in range(4):
                yield b"abc"

        api["responses"].append(httpx.Response(200, content=chunks()))
        target = tmp_path / "downloads" / "report.gz"
        result = runner.invoke(
            app, ["download", "https://iosapps.itunes.apple.com/r.gz", "--output", str(target)]
        )
        assert result.exit_code == 0, result.output
        assert target.read_bytes() == b"abc" * 4
        assert "Saved 12 bytes" in result.output
        assert sorted(p.name for p in target.parent.iterdir()) == ["report.gz"]

    def test_interrupted_download_keeps_existing_file(
        self, isolated_config: Path, tmp_path: Path, api: dict
    ) -> None:
        def broken():
            yield b"partial"
            raise httpx.ReadError("connection reset")

        target = tmp_path / "downloads" / "report.gz"
        target.parent.mkdir()
        target.write_bytes(b"previous")
        api["responses"].append(httpx.Response(200, content=broken()))
        result = runner.invoke(
            app, ["download", "https://iosapps.itunes.apple.com/r.gz", "--output", str(target)]
        )
        assert result.exit_code == EXIT_CONNECTION_ERROR
        assert target.read_bytes() == b"previous"
        assert sorted(p.name for p in target.parent.iterdir()) == ["report.gz"]


    def test_download_rejects_disallowed_host(self, isolated_config: Path, tmp_path: Path, api: dict) -> None:
        result = runner.invoke(
            app, ["download", "https://evil.example.com/r.gz", "--output", str(tmp_path / "r.gz")]
        )
        assert result.exit_code == EXIT_INVALID_USAGE
        assert api["requests"] == []
        assert not (tmp_path / "r.gz").exists()
