"""Command-line bootstrap for the quizsmith agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import mimetypes
import os
import sys
from dataclasses import asdict, dataclass, is_dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.orchestration import (
    AgentConfig,
    AgentLoop,
    AgentState,
    DocumentAttachment,
    ToolExecutor,
    TurnInput,
    TurnResult,
)
from .ai.prompts import step_limit_notice
from .ai.services import ContextBudgetManager, ResponseCache, RetryPolicy
from .ai.tools import EditDocumentTool, EditMatcher, LLMEditFixer, ReadDocumentTool
from .ai.transport import LLMTransport, TokenCountingService, create_transport
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)
_TEXT_SUFFIXES = {".txt", ".md", ".markdown", ".html", ".htm", ".csv", ".json", ".xml"}


@dataclass(slots=True)
class AgentRuntime:
    """Container returned by :func:`build_agent`."""

    agent: AgentLoop
    transport: LLMTransport

    async def aclose(self) -> None:
        cache = self.agent.cache
        if cache is not None:
            await cache.clear()
        await self.transport.aclose()


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure rotating-file logging for the command-line tool."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_agent(settings: Settings, *, transport: LLMTransport | None = None) -> AgentRuntime:
    """Wire a transport, the document tools and the budget/retry/cache services."""

    active_transport = transport or create_transport(settings)
    fixer = LLMEditFixer(active_transport, model=settings.fixer_model or settings.model)
    executor = ToolExecutor([EditDocumentTool(EditMatcher(fixer)), ReadDocumentTool()])
    cache = None
    if settings.enable_cache and getattr(active_transport, "supports_caching", False):
        cache = ResponseCache(
            active_transport,  # type: ignore[arg-type]
            ttl=settings.cache_ttl,
            reuse_seconds=settings.cache_reuse_seconds,
        )
    counter = active_transport if isinstance(active_transport, TokenCountingService) else None
    agent = AgentLoop(
        active_transport,
        executor,
        config=AgentConfig.from_settings(settings),
        budget=ContextBudgetManager(settings.context_policy, counter=counter),
        retry=RetryPolicy(settings.retry),
        cache=cache,
    )
    return AgentRuntime(agent=agent, transport=active_transport)


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `quizsmith` console script."""

    args = _parse_cli_args(argv)

    debug = _env_flag("QUIZSMITH_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("QUIZSMITH_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    overrides_mapping: Dict[str, Any] | None = cli_overrides or None
    settings = load_settings(resolved_path, store=settings_store, overrides=overrides_mapping)
    logging_utils.register_secret(settings.api_key)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if args.list_models:
        asyncio.run(_list_models(settings))
        return

    if not args.message:
        print("Nothing to do: pass --message (with --document) or --list-models.", file=sys.stderr)
        raise SystemExit(2)

    result = asyncio.run(_run_turn(settings, args))
    if not result.ok:
        raise SystemExit(1)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


async def _list_models(settings: Settings, *, stream: TextIO | None = None) -> None:
    destination = stream or sys.stdout
    transport = create_transport(settings)
    try:
        async for model in transport.list_models():
            label = f" ({model.display_name})" if model.display_name and model.display_name != model.name else ""
            destination.write(f"{model.name}{label}\n")
    finally:
        await transport.aclose()


async def _run_turn(
    settings: Settings,
    args: argparse.Namespace,
    *,
    runtime: AgentRuntime | None = None,
    stream: TextIO | None = None,
) -> TurnResult:
    destination = stream or sys.stdout
    document_path = Path(args.document).expanduser() if args.document else None
    markup = _read_document(document_path)
    attachments = [_load_attachment(Path(item).expanduser()) for item in args.attach or []]
    active = runtime or build_agent(settings)

    def _on_state(state: AgentState) -> None:
        _LOGGER.debug("Agent state: %s", state.value)

    try:
        result = await active.agent.run(
            TurnInput(message=args.message, document_markup=markup, attachments=attachments),
            on_text=destination.write,
            on_state=_on_state,
        )
    finally:
        await active.aclose()

    destination.write("\n")
    if not result.ok:
        destination.write(f"{result.text}\n")
    for warning in result.warnings:
        _LOGGER.warning("%s", warning)
    if result.step_limit_reached:
        destination.write(step_limit_notice(active.agent.config.max_agent_turns).strip() + "\n")

    target = Path(args.output).expanduser() if args.output else document_path
    if result.document_changed:
        if target is None:
            destination.write(result.document_markup + "\n")
        else:
            target.write_text(result.document_markup, encoding="utf-8")
            _LOGGER.info("Wrote updated document to %s", target)
    return result


def _read_document(path: Path | None) -> str:
    if path is None or not path.exists():
        return ""
    return path.read_text(encoding="utf-8")


def _load_attachment(path: Path) -> DocumentAttachment:
    if path.suffix.lower() in _TEXT_SUFFIXES:
        return DocumentAttachment.from_text(path.name, path.read_text(encoding="utf-8"))
    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return DocumentAttachment.from_bytes(path.name, path.read_bytes(), mime_type)


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="quizsmith",
        add_help=True,
        description="Chat with a model to inspect and edit a question/answer document.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.quizsmith/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument(
        "--list-models",
        action="store_true",
        help="List the models offered by the configured provider and exit.",
    )
    parser.add_argument("--document", metavar="PATH", help="HTML document to inspect or edit.")
    parser.add_argument("--message", "-m", metavar="TEXT", help="Chat message for one agent turn.")
    parser.add_argument(
        "--attach",
        metavar="PATH",
        action="append",
        default=[],
        help="Source document to attach (repeatable).",
    )
    parser.add_argument(
        "--output",
        metavar="PATH",
        help="Where to write the edited document (defaults to --document).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is type(None) or normalized.lower() in {"none", "null"}:
        return None
    if is_dataclass(target):
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dataclass overrides must be valid JSON") from exc
        if isinstance(target, type):
            return target(**payload)
        raise ValueError("Dataclass override target is not instantiable")
    if target is dict:
        try:
            return json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return _resolve_annotation(args[0])


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    api_key = payload.get("api_key", "")
    if isinstance(api_key, str):
        payload["api_key"] = redact_secret(api_key)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("QUIZSMITH_"))


if __name__ == "__main__":  # pragma: no cover
    main()
