import argparse
import asyncio
import os
from pathlib import Path

import uvicorn

_COMMANDS = ("serve", "doctor", "keys")


def _maybe_load_dotenv(path: Path) -> None:
    if not path.exists() or not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if not key:
            continue
        if value and value[0] in {"'", '"'} and value[-1] == value[0]:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="copilot-gateway",
        description="Serve Microsoft 365 Copilot as an OpenAI-compatible /v1 API with per-user sign-in.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=_COMMANDS,
        help="serve (default), doctor (check configuration) or keys (list caller keys).",
    )
    parser.add_argument(
        "--host",
        default=os.environ.get("COPILOT_GATEWAY_HOST", "127.0.0.1"),
        help="Bind host (default: 127.0.0.1).",
    )
    parser.add_argument(
        "--port",
        default=int(os.environ.get("COPILOT_GATEWAY_PORT", "8080")),
        type=int,
        help="Bind port (default: 8080).",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable uvicorn reload (dev only).",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("COPILOT_LOG_LEVEL", "info"),
        help="Uvicorn log level (default: info).",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Optionally load environment variables from this .env file.",
    )
    return parser


def _status(ok: bool, *, warn: bool = False) -> str:
    if ok:
        return "[green]ok[/green]"
    return "[yellow]unset[/yellow]" if warn else "[red]missing[/red]"


async def run_doctor() -> int:
    from redis.exceptions import RedisError
    from rich.console import Console
    from rich.table import Table

    from .config import settings
    from .kv import create_redis

    console = Console()
    table = Table(title="copilot-gateway doctor", border_style="dim")
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    table.add_column("Detail", style="dim")

    missing = settings.missing_required()
    for name in ("AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET"):
        table.add_row(name, _status(name not in missing), "required for sign-in")
    table.add_row("SESSION_SECRET", _status(bool(settings.session_secret), warn=True), "cookie sessions")
    table.add_row("COPILOT_GATEWAY_TOKEN", _status(bool(settings.bearer_token), warn=True), "gateway bearer token")

    redis_ok = False
    redis = create_redis(settings.redis_url)
    try:
        redis_ok = bool(await redis.ping())
        detail = settings.redis_url.split("@")[-1]
    except (RedisError, OSError) as e:
        detail = str(e)
    finally:
        await redis.aclose()
    table.add_row("Redis", _status(redis_ok), detail)

    console.print(table)
    return 1 if missing or not redis_ok else 0


async def run_list_keys() -> int:
    from redis.exceptions import RedisError
    from rich.console import Console
    from rich.table import Table

    from .config import settings
    from .credentials import CredentialStore
    from .kv import create_redis

    console = Console()
    redis = create_redis(settings.redis_url)
    store = CredentialStore(redis, key_ttl=settings.user_key_ttl, cache_ttl=settings.token_cache_ttl)
    try:
        keys = await store.list_all()
    except (RedisError, OSError) as e:
        console.print(f"[red]Redis unavailable:[/red] {e}")
        return 1
    finally:
        await redis.aclose()

    table = Table(title=f"Caller keys ({len(keys)})", border_style="dim")
    table.add_column("Key", style="cyan")
    table.add_column("Label")
    table.add_column("Account")
    table.add_column("Created", justify="right")
    table.add_column("Rotated", justify="right")
    for item in keys:
        table.add_row(
            item["key"],
            item.get("label") or "",
            item["account_id"],
            str(item.get("created_at") or ""),
            str(item.get("rotated_at") or ""),
        )
    console.print(table)
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.env_file:
        path = Path(args.env_file)
        _maybe_load_dotenv(path)
        if path.exists():
            print(f"[copilot-gateway] loaded env: {path}")

    # Settings are read from the environment at import time, so every import of
    # `.config` happens after the env file is loaded.
    if args.command == "doctor":
        raise SystemExit(asyncio.run(run_doctor()))
    if args.command == "keys":
        raise SystemExit(asyncio.run(run_list_keys()))

    uvicorn.run(
        "copilot_gateway.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


__all__ = ["main"]
