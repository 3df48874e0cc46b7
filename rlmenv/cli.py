"""CLI entry point for rlmenv.

Runs one RLM session over a context file with any supported backend:
- Anthropic API
- OpenAI
- OpenRouter (multi-provider gateway)
- OpenAI-compatible local servers (Ollama, vLLM)

Usage:
    rlmenv --context-file document.txt --query "What are the main themes?" --model claude-sonnet-4-5
    rlmenv --backend ollama --model llama3.2 --context-file doc.txt --query "Summarize"
    rlmenv --config rlm.yaml --context-file doc.txt --query "Summarize" --trace-out trace.json
"""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import TypeVar

import click

from .backends import AnthropicBackend, LLMBackend, OpenAICompatibleBackend
from .config import (
    ConfigError,
    ResolvedRoleConfig,
    RLMConfig,
    SettingsConfig,
    load_config,
    resolve_role,
)
from .context import ContextBuffer
from .prompts import PROMPT_VARIANTS
from .rlm import RLM, RLMResult

BACKENDS = ("anthropic", "openai", "openrouter", "ollama", "vllm")

# Keyed OpenAI-compatible presets: backend_name -> (display_name, env_var, default_url).
_OPENAI_COMPAT_PRESETS: dict[str, tuple[str, str, str]] = {
    "openai": ("OpenAI", "OPENAI_API_KEY", "https://api.openai.com/v1"),
    "openrouter": ("OpenRouter", "OPENROUTER_API_KEY", "https://openrouter.ai/api/v1"),
}


def _resolve_ollama_url(base_url_override: str | None) -> str:
    """Resolve the Ollama base URL from an explicit value or ``OLLAMA_HOST``."""
    if base_url_override:
        return base_url_override
    ollama_host = os.getenv("OLLAMA_HOST", "localhost:11434")
    if not ollama_host.startswith("http"):
        ollama_host = f"http://{ollama_host}"
    return f"{ollama_host.rstrip('/')}/v1"


def _resolve_api_key(resolved: ResolvedRoleConfig, env_var: str, role_name: str) -> str:
    """Resolve an API key from the config or environment, raising on missing."""
    api_key = resolved.api_key or os.getenv(env_var)
    if not api_key:
        raise ValueError(f"{env_var} not set (needed for {role_name} role)")
    return api_key


def _create_backend(resolved: ResolvedRoleConfig, role_name: str) -> LLMBackend:
    """Create an LLM backend from a resolved role config.

    Raises
    ------
    ValueError
        If the backend name is unknown or a required API key is missing.
    """
    backend_name = resolved.backend or "anthropic"

    if backend_name == "anthropic":
        api_key = _resolve_api_key(resolved, "ANTHROPIC_API_KEY", role_name)
        click.echo(f"Using Anthropic backend for {role_name}")
        return AnthropicBackend(api_key=api_key)

    preset = _OPENAI_COMPAT_PRESETS.get(backend_name)
    if preset:
        display_name, env_var, default_url = preset
        api_key = _resolve_api_key(resolved, env_var, role_name)
        base_url = resolved.base_url or default_url
        click.echo(f"Using {display_name} backend for {role_name}")
        click.echo(f"  Base URL: {base_url}")
        return OpenAICompatibleBackend(base_url=base_url, api_key=api_key)

    if backend_name == "ollama":
        base_url = _resolve_ollama_url(resolved.base_url)
        click.echo(f"Using Ollama backend for {role_name}")
        click.echo(f"  Base URL: {base_url}")
        return OpenAICompatibleBackend(base_url=base_url, api_key="ollama")

    if backend_name == "vllm":
        base_url = resolved.base_url or os.getenv("VLLM_BASE_URL", "http://localhost:8000/v1")
        api_key = resolved.api_key or os.getenv("VLLM_API_KEY", "EMPTY")
        click.echo(f"Using vLLM backend for {role_name}")
        click.echo(f"  Base URL: {base_url}")
        return OpenAICompatibleBackend(base_url=base_url, api_key=api_key)

    raise ValueError(f"Unknown backend '{backend_name}' for {role_name} role")


def _roles_differ(a: ResolvedRoleConfig, b: ResolvedRoleConfig) -> bool:
    """Return True if two resolved configs need separate backends."""
    return (a.backend != b.backend) or (a.base_url != b.base_url) or (a.api_key != b.api_key)


def _apply_cli_overrides(
    args: argparse.Namespace,
    root: ResolvedRoleConfig,
    sub_call: ResolvedRoleConfig,
) -> None:
    """Apply CLI flag overrides to resolved role configs (mutates in place)."""
    if args.backend is not None:
        root.backend = args.backend
    if args.model is not None:
        root.model = args.model
    if args.base_url is not None:
        root.base_url = args.base_url
    if args.sub_model is not None:
        sub_call.model = args.sub_model


def _cascade_role_defaults(source: ResolvedRoleConfig, target: ResolvedRoleConfig) -> None:
    """Fill None fields in *target* from *source* (mutates target)."""
    if target.backend is None:
        target.backend = source.backend
    if target.model is None:
        target.model = source.model
    if target.base_url is None:
        target.base_url = source.base_url
    if target.api_key is None:
        target.api_key = source.api_key


T = TypeVar("T")


def _first(*values: T | None) -> T | None:
    """Return the first non-None value."""
    for value in values:
        if value is not None:
            return value
    return None


def _merge_settings(args: argparse.Namespace, cfg: SettingsConfig) -> dict[str, object]:
    """Merge CLI args with config settings and hardcoded defaults."""
    return {
        "max_iterations": _first(args.max_iterations, cfg.max_iterations, 10),
        "max_depth": _first(args.max_depth, cfg.max_depth, 1),
        "max_tokens": _first(args.max_tokens, cfg.max_tokens, 4096),
        "max_concurrency": _first(args.max_concurrency, cfg.max_concurrency, 4),
        "sub_call_timeout": _first(cfg.sub_call_timeout, 120.0),
        "batch_timeout": cfg.batch_timeout,
        "requests_per_second": cfg.requests_per_second,
        "timeout": _first(args.timeout, cfg.timeout),
        "max_token_budget": cfg.max_token_budget,
        "prompt_variant": _first(args.prompt_variant, cfg.prompt_variant, "strong"),
        "recursive_sub_calls": args.recursive or (cfg.recursive_sub_calls is True),
        "verbose": args.verbose or (cfg.verbose is True),
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rlmenv",
        description="rlmenv - Recursive Language Model execution scaffold for long contexts",
    )
    parser.add_argument("--context-file", type=Path, help="Path to the context file")
    parser.add_argument(
        "--query",
        default="What are the main topics discussed in this document?",
        help="Query to ask about the context",
    )
    parser.add_argument(
        "--backend", choices=BACKENDS, default=None, help="LLM backend (default: anthropic)"
    )
    parser.add_argument("--model", default=None, help="Root model (required unless in config)")
    parser.add_argument("--sub-model", help="Model for sub-calls (defaults to --model)")
    parser.add_argument("--base-url", help="Base URL override for OpenAI-compatible backends")
    parser.add_argument("--config", type=Path, default=None, help="Path to YAML configuration")
    parser.add_argument("--max-depth", type=int, default=None, help="Maximum recursion depth (default: 1)")
    parser.add_argument("--max-iterations", type=int, default=None, help="Maximum root turns (default: 10)")
    parser.add_argument("--max-tokens", type=int, default=None, help="Maximum tokens per response (default: 4096)")
    parser.add_argument(
        "--max-concurrency", type=int, default=None, help="Maximum parallel sub-calls (default: 4)"
    )
    parser.add_argument(
        "--prompt-variant", choices=PROMPT_VARIANTS, default=None, help="Root system prompt variant"
    )
    parser.add_argument("--timeout", type=float, default=None, help="Wall-clock timeout in seconds")
    parser.add_argument(
        "--recursive",
        action="store_true",
        help="Run sub-calls as full nested sessions instead of single model calls",
    )
    parser.add_argument("--trace-out", type=Path, default=None, help="Write the session trace as JSON")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {_get_version()}")
    return parser


def _write_trace(result: RLMResult, path: Path) -> None:
    payload = {
        "session_id": result.session_id,
        "state": result.state.value,
        "success": result.success,
        "error": result.error,
        "stats": result.stats.__dict__,
        "tree": result.trace,
    }
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    click.echo(f"Trace written to {path}")


def _run_completion(
    rlm: RLM, context: ContextBuffer, query: str, trace_out: Path | None
) -> int:
    """Execute the RLM completion loop and print results."""
    click.echo(click.style("\U0001f680 STARTING RLM COMPLETION", bold=True, fg="cyan"))

    try:
        result = rlm.completion(context=context, query=query)
    except KeyboardInterrupt:
        click.echo(click.style("\n\U0000274c INTERRUPTED BY USER", bold=True, fg="red"), err=True)
        return 130
    except Exception as e:
        click.echo(click.style(f"\n\U0000274c ERROR: {e}", bold=True, fg="red"), err=True)
        return 1

    if trace_out is not None:
        try:
            _write_trace(result, trace_out)
        except OSError as e:
            click.echo(f"Error writing trace: {e}", err=True)

    if not result.success:
        click.echo(
            click.style(
                f"\n\U0000274c SESSION {result.state.value.upper()}: {result.error}",
                bold=True,
                fg="red",
            ),
            err=True,
        )
        return 1

    click.echo(click.style("\n\U00002705 FINAL ANSWER", bold=True, fg="green"))
    click.echo(result.answer)

    click.echo(click.style("\n\U0001f4ca STATISTICS", bold=True, fg="blue"))
    for key, value in rlm.cost_summary().items():
        click.echo(f"  {key}: {value}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    args = _build_parser().parse_args(argv)

    try:
        config = load_config(args.config) if args.config else RLMConfig()
    except (FileNotFoundError, ConfigError) as e:
        click.echo(f"Config error: {e}", err=True)
        return 1

    root_resolved = resolve_role("root", config)
    sub_resolved = resolve_role("sub_call", config)
    _apply_cli_overrides(args, root_resolved, sub_resolved)
    _cascade_role_defaults(root_resolved, sub_resolved)
    if root_resolved.backend is None:
        root_resolved.backend = sub_resolved.backend = "anthropic"

    if not root_resolved.model:
        click.echo("Error: --model is required (or use --config with a config file)", err=True)
        return 1
    if args.context_file is None:
        click.echo("Error: --context-file is required", err=True)
        return 1

    settings = _merge_settings(args, config.settings)

    try:
        context = ContextBuffer.from_path(args.context_file)
    except (OSError, UnicodeDecodeError) as e:
        click.echo(f"Error loading context: {e}", err=True)
        return 1
    click.echo(f"Context file: {args.context_file} ({len(context):,} characters)")
    click.echo(f"Query: {args.query}\n")

    try:
        root_backend = _create_backend(root_resolved, "root")
        sub_backend = (
            _create_backend(sub_resolved, "sub_call")
            if _roles_differ(sub_resolved, root_resolved)
            else root_backend
        )
    except (ValueError, ImportError) as e:
        click.echo(f"Error: {e}", err=True)
        return 1

    try:
        rlm = RLM(
            backend=root_backend,
            model=root_resolved.model,
            sub_model=sub_resolved.model,
            sub_backend=sub_backend,
            root_system_prompt=root_resolved.system_prompt,
            sub_call_system_prompt=sub_resolved.system_prompt,
            **settings,  # type: ignore[arg-type]
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        return 1

    return _run_completion(rlm, context, args.query, args.trace_out)


def _get_version() -> str:
    from . import __version__

    return __version__
