from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import httpx
import typer

app = typer.Typer(help="choicebook backend CLI")
story_app = typer.Typer(help="Story structure commands")
session_app = typer.Typer(help="Reader session commands")
app.add_typer(story_app, name="story")
app.add_typer(session_app, name="session")

DEFAULT_BACKEND_URL = "http://127.0.0.1:8000"
API_PREFIX = "/api/v1"
STATE_PATH = Path(__file__).resolve().parent / ".state.json"


def load_state(path: Path | None = None) -> dict[str, Any]:
    path = path or STATE_PATH
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text())
    except (json.JSONDecodeError, OSError):
        return {}


def save_state(data: dict[str, Any], path: Path | None = None) -> None:
    path = path or STATE_PATH
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2))


def backend_url() -> str:
    return os.getenv("BACKEND_URL", DEFAULT_BACKEND_URL).rstrip("/")


def request(
    method: str,
    endpoint: str,
    *,
    json_body: Any = None,
    params: dict[str, Any] | None = None,
) -> httpx.Response:
    url = f"{backend_url()}{endpoint}"
    with httpx.Client(timeout=20.0) as client:
        return client.request(method, url, json=json_body, params=params)


def response_detail_code(resp: httpx.Response) -> str | None:
    try:
        payload = resp.json()
    except ValueError:
        return None
    detail = payload.get("detail") if isinstance(payload, dict) else None
    if isinstance(detail, dict):
        code = detail.get("code")
        if isinstance(code, str) and code.strip():
            return code.strip()
    return None


def _read_json_file(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        raise typer.BadParameter(f"cannot read structure file {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise typer.BadParameter(f"structure file {path} must hold a JSON object")
    return payload


def _resolve_session_id(session_id: str | None) -> str:
    if session_id:
        return session_id
    sid = load_state().get("session_id")
    if not sid:
        raise typer.BadParameter("No session_id provided and no saved session in client/.state.json")
    return str(sid)


def _handle_response(resp: httpx.Response, action: str) -> dict[str, Any] | None:
    if resp.status_code == 404:
        typer.echo(f"{action}: not found ({response_detail_code(resp) or resp.status_code}).")
        return None
    if resp.status_code >= 400:
        code = response_detail_code(resp)
        typer.echo(f"{action} failed ({resp.status_code}{f' {code}' if code else ''}): {resp.text}")
        raise typer.Exit(code=1)
    try:
        return resp.json()
    except ValueError:
        typer.echo(resp.text)
        return None


def _print_path(body: dict[str, Any]) -> None:
    typer.echo(f"session_id: {body.get('session_id')}")
    typer.echo(f"status: {body.get('status')}")
    typer.echo(f"current_chapter: {body.get('current_chapter')}")
    typer.echo(f"path_completion: {body.get('path_completion')}")
    endings = body.get("discovered_endings") or []
    if endings:
        typer.echo(f"discovered_endings: {', '.join(endings)}")


@app.command()
def ping() -> None:
    resp = request("GET", "/health")
    body = _handle_response(resp, "ping")
    if body is not None:
        typer.echo(f"ok: {body}")


@story_app.command("validate")
def story_validate(path: Path = typer.Argument(..., help="Structure JSON document")) -> None:
    resp = request("POST", f"{API_PREFIX}/stories/validate", json_body={"structure": _read_json_file(path)})
    body = _handle_response(resp, "validate")
    if body is None:
        return
    typer.echo(f"is_valid: {body.get('is_valid')}")
    for issue in body.get("errors", []):
        typer.echo(f"  [{issue.get('severity')}] {issue.get('type')} at {issue.get('location')}: {issue.get('message')}")
    for warning in body.get("warnings", []):
        typer.echo(f"  [warning] {warning.get('type')} at {warning.get('location')}: {warning.get('message')}")
    if not body.get("is_valid"):
        raise typer.Exit(code=2)


@story_app.command("publish")
def story_publish(
    path: Path = typer.Argument(..., help="Structure JSON document"),
    story_id: str | None = typer.Option(None, "--story-id", help="Override the document's story id"),
) -> None:
    payload = _read_json_file(path)
    sid = story_id or str(payload.get("story_id") or "")
    if not sid:
        raise typer.BadParameter("structure has no story_id; pass --story-id")
    resp = request("POST", f"{API_PREFIX}/stories/{sid}/structure", json_body=payload)
    body = _handle_response(resp, "publish")
    if body is not None:
        typer.echo(f"published {body.get('story_id')} v{body.get('version')} checksum={body.get('checksum')}")


@story_app.command("analytics")
def story_analytics(story_id: str = typer.Argument(...)) -> None:
    resp = request("GET", f"{API_PREFIX}/stories/{story_id}/analytics")
    body = _handle_response(resp, "analytics")
    if body is None:
        return
    typer.echo(f"total_paths: {body.get('total_paths')}")
    typer.echo(f"average_path_length: {body.get('average_path_length')}")
    typer.echo(f"replay_value_score: {body.get('replay_value_score')}")
    typer.echo(f"ending_distribution: {json.dumps(body.get('ending_distribution', {}), sort_keys=True)}")


@session_app.command("create")
def session_create(
    story_id: str = typer.Option(..., "--story-id", help="Published story id"),
    user_id: str = typer.Option(..., "--user-id", help="Reader id"),
) -> None:
    resp = request("POST", f"{API_PREFIX}/sessions", json_body={"user_id": user_id, "story_id": story_id})
    body = _handle_response(resp, "session create")
    if body is None:
        return
    state = load_state()
    state["session_id"] = body.get("session_id")
    save_state(state)
    _print_path(body)


@session_app.command("get")
def session_get(session_id: str | None = typer.Argument(default=None)) -> None:
    sid = _resolve_session_id(session_id)
    body = _handle_response(request("GET", f"{API_PREFIX}/sessions/{sid}"), "session get")
    if body is not None:
        _print_path(body)


@session_app.command("choose")
def session_choose(
    choice_id: str = typer.Argument(...),
    session_id: str | None = typer.Option(default=None, help="Override session id"),
    seconds: float = typer.Option(0.0, "--seconds", help="Decision time in seconds"),
) -> None:
    sid = _resolve_session_id(session_id)
    resp = request(
        "POST",
        f"{API_PREFIX}/sessions/{sid}/choices",
        json_body={"choice_id": choice_id, "time_taken_seconds": seconds},
    )
    body = _handle_response(resp, "choose")
    if body is None:
        return
    _print_path(body.get("path", {}))
    if body.get("ending_id"):
        typer.echo(f"ending: {body.get('ending_id')}")
    typer.echo(f"resolvable_consequences: {body.get('resolvable_count')}")


@session_app.command("end")
def session_end(session_id: str | None = typer.Option(default=None)) -> None:
    sid = _resolve_session_id(session_id)
    body = _handle_response(request("POST", f"{API_PREFIX}/sessions/{sid}/end"), "end")
    if body is not None:
        _print_path(body)


@app.command()
def sweep() -> None:
    body = _handle_response(request("POST", f"{API_PREFIX}/sessions/sweep"), "sweep")
    if body is not None:
        typer.echo(f"abandoned: {body.get('abandoned')}")


@app.command()
def telemetry() -> None:
    body = _handle_response(request("GET", f"{API_PREFIX}/telemetry/runtime"), "telemetry")
    if body is not None:
        typer.echo(json.dumps(body, indent=2, sort_keys=True))


if __name__ == "__main__":
    app()
