"""Generic API commands -- ``ascli request`` and ``ascli download``.

These expose the request dispatcher directly so that any endpoint can be
called without a resource-specific command::

    ascli request GET /v1/apps --query limit=200 --paginate
    ascli request PATCH /v1/apps/123 --body '{"data": {...}}'
    ascli download "https://...mzstatic.com/report.gz" --output report.gz
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import httpx
import typer

from ascli.client.dispatcher import RequestDispatcher
from ascli.commands import exit_on_error
from ascli.config import resolve_request_config
from ascli.exceptions import ConnectionError_, InvalidUsageError, TimeoutError_
from ascli.models import Page, Resource
from ascli.output import debug, format_response, success


def _dispatcher(ctx: typer.Context) -> RequestDispatcher:
    obj = ctx.obj or {}
    config = resolve_request_config(cli_timeout=obj.get("timeout"))
    return RequestDispatcher(profile=obj.get("profile"), config=config)


def _parse_query(values: Optional[list[str]]) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise InvalidUsageError(f"Invalid --query value {item!r} (expected key=value)")
        params[key.strip()] = value
    return params


def _parse_body(body: Optional[str]) -> Any:
    """Parse *body* as JSON if possible, returning the raw string on failure."""
    if body is None:
        return None
    try:
        return json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body


def request_command(
    ctx: typer.Context,
    method: str = typer.Argument(..., help="HTTP method (GET, POST, PATCH, DELETE, ...)."),
    path: str = typer.Argument(..., help="API path, e.g. /v1/apps."),
    body: Optional[str] = typer.Option(None, "--body", help="Request body (JSON)."),
    query: Optional[list[str]] = typer.Option(None, "--query", help="Query parameter key=value; repeatable."),
    paginate: bool = typer.Option(False, "--paginate", help="Follow next links and merge all pages."),
) -> None:
    """Send an authenticated request and print the response."""
    with exit_on_error():
        method = method.upper()
        params = _parse_query(query)
        if paginate and method != "GET":
            raise InvalidUsageError("--paginate is only valid for GET requests")

        with _dispatcher(ctx) as dispatcher:
            if paginate:
                page = dispatcher.paginate(
                    path,
                    Page[Resource],
                    params=params or None,
                    observer=lambda n, next_url: debug(f"Fetched page {n}"),
                )
                data: Any = page.model_dump(mode="json", by_alias=True, exclude_none=True)
            else:
                data = dispatcher.dispatch_json(
                    method,
                    path,
                    _parse_body(body),
                    params=params or None,
                )
            if dispatcher.rate_limit is not None:
                debug(f"Rate limit: {dispatcher.rate_limit.summary()}")

        if data is not None:
            format_response(data)


def download_command(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Download URL on an allowed storage host."),
    output: Path = typer.Option(..., "--output", "-o", help="Destination file."),
) -> None:
    """Download a report or asset without sending credentials."""
    with exit_on_error():
        with _dispatcher(ctx) as dispatcher:
            with dispatcher.dispatch_stream_unauthenticated(url) as response:
                size = _stream_to_file(response, output)
        success(f"Saved {size} bytes to {output}")


def _stream_to_file(response: httpx.Response, path: Path) -> int:
    """Write the response body to *path* chunk by chunk; return the byte count.

    The body goes to a temporary file beside *path* that replaces it only
    once the download is complete, so a failed transfer never leaves a
    truncated file behind.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = None
    tmp_path: Optional[str] = None
    size = 0
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="wb", dir=path.parent, prefix=f".{path.name}.", suffix=".part", delete=False
        )
        tmp_path = fd.name
        try:
            for chunk in response.iter_bytes():
                fd.write(chunk)
                size += len(chunk)
        except httpx.TimeoutException as exc:
            raise TimeoutError_(f"Download timed out after {size} bytes") from exc
        except httpx.TransportError as exc:
            raise ConnectionError_(f"Download interrupted after {size} bytes: {exc}") from exc
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise
    return size
