"""
codi-agent: autonomous coding assistant for your terminal.

Command: codi-agent [PROMPT]
"""

import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from . import __version__
from .agent import Agent, ChatOutcome
from .confirmation import ConfirmationResult, ToolConfirmation
from .config import CONFIG_DIR, Config, ModelPreset
from .errors import ProviderUnavailableError
from .llm import LiteLLMProvider
from .logger import setup_logger
from .tools import create_default_registry

console = Console()
BANNER = (
    f"[bold #7FA6D9]codi-agent[/bold #7FA6D9] "
    f"[dim]v{__version__} · autonomous coding assistant[/dim]"
)
EXIT_WORDS = {"exit", "quit", ":q"}
PREVIEW_CHARS = 120


# ── Rendering callbacks ──


def _on_text(chunk: str):
    console.print(chunk, end="", markup=False, highlight=False)


def _on_tool_call(name: str, arguments: dict):
    args = json.dumps(arguments, ensure_ascii=False, default=str)
    if len(args) > PREVIEW_CHARS:
        args = args[:PREVIEW_CHARS] + "…"
    console.print(f"\n  [#7FA6D9]⏺[/#7FA6D9] [bold]{escape(name)}[/bold] [#6E7681]{escape(args)}[/#6E7681]")


def _on_tool_result(name: str, content: str, is_error: bool):
    first_line = content.strip().splitlines()[0] if content.strip() else "(no output)"
    if len(first_line) > PREVIEW_CHARS:
        first_line = first_line[:PREVIEW_CHARS] + "…"
    style = "#F85149" if is_error else "#6E7681"
    console.print(f"    [{style}]↳ {escape(first_line)}[/{style}]")


def make_console_confirm(out: Console):
    """Confirmation callback that asks on the terminal: y=approve, n=deny, a=abort."""

    def confirm(request: ToolConfirmation) -> ConfirmationResult:
        out.print()
        if request.is_dangerous:
            out.print(f"  [bold #F85149]⚠ Dangerous:[/bold #F85149] {escape(request.danger_reason or '')}")
        if request.tool_name == "bash":
            out.print(f"  [#6E7681]$[/#6E7681] {escape(str(request.input.get('command', '')))}")
        if request.diff_preview:
            out.print(Panel(
                Syntax(request.diff_preview, "diff", theme="ansi_dark", word_wrap=True),
                border_style="#30363D", padding=(0, 1), expand=False,
            ))
        try:
            ans = out.input(
                f"  [#E3B341]?[/#E3B341] Allow [bold]{escape(request.tool_name)}[/bold]? "
                "[bold #E6EDF3](y)[/bold #E6EDF3][#8B949E]es[/#8B949E] / "
                "[bold #E6EDF3](n)[/bold #E6EDF3][#8B949E]o[/#8B949E] / "
                "[bold #E6EDF3](a)[/bold #E6EDF3][#8B949E]bort[/#8B949E]: "
            ).strip().lower()
        except EOFError:
            return ConfirmationResult.ABORT
        if ans in ("y", "yes", ""):
            return ConfirmationResult.APPROVE
        if ans in ("a", "abort"):
            return ConfirmationResult.ABORT
        return ConfirmationResult.DENY

    return confirm


# ── Setup ──


def _resolve_preset(config: Config, model: str) -> None:
    if config.set_active_model(model):
        return
    # Unknown name: treat it as a raw litellm model string
    provider = model.split("/", 1)[0] if "/" in model else "openai"
    config.models["_cli"] = ModelPreset(name="_cli", provider=provider, model=model)
    config.active_model = "_cli"


def build_agent(config: Config) -> Agent:
    preset = config.get_active_preset()
    provider = LiteLLMProvider(**preset.get_llm_kwargs())
    registry = create_default_registry(
        project_root=config.project_root or ".",
        command_timeout=config.command_timeout,
        fallback_config=config.fallback,
    )
    return Agent(
        provider=provider,
        registry=registry,
        on_confirm=make_console_confirm(console),
        on_text=_on_text,
        on_tool_call=_on_tool_call,
        on_tool_result=_on_tool_result,
        project_root=config.project_root or ".",
        token_model=preset.model,
        **config.agent_kwargs(),
    )


def _print_models(config: Config):
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("")
    table.add_column("Name")
    table.add_column("Model")
    table.add_column("Description", style="dim")
    for m in config.list_models():
        table.add_row("●" if m["active"] else "", m["name"], m["model"], m["description"])
    console.print(table)


def _print_context(agent: Agent):
    info = agent.get_context_info()
    console.print(
        f"  [#8B949E]context:[/#8B949E] {info['tokens']:,} / {info['max_tokens']:,} tokens "
        f"[dim]({info['tier_name']} tier, window {info['context_window']:,})[/dim]\n"
        f"  [#8B949E]messages:[/#8B949E] {info['messages']} "
        f"[dim](user {info['user_messages']}, assistant {info['assistant_messages']}, "
        f"tool results {info['tool_result_messages']})[/dim]"
        + ("\n  [#8B949E]summary:[/#8B949E] yes" if info["has_summary"] else "")
    )


def _run_turn(agent: Agent, prompt: str, verbose: bool) -> bool:
    """One chat() with terminal rendering; False when the backend is gone."""
    try:
        reply = agent.chat(prompt)
    except ProviderUnavailableError as e:
        console.print(f"\n[red]  Error: {escape(str(e))}[/red]")
        return False
    except KeyboardInterrupt:
        console.print("\n[yellow]  Interrupted.[/yellow]")
        return True

    # Streamed text already shows the answer; only trailers are new here
    if agent.last_outcome is not ChatOutcome.COMPLETED:
        trailer = reply.rsplit("\n\n", 1)[-1]
        console.print(f"\n[#E3B341]  {escape(trailer)}[/#E3B341]")
    console.print()
    if verbose:
        _print_context(agent)
    return True


def _handle_command(agent: Agent, line: str) -> bool:
    """Slash commands; True if the line was one."""
    cmd = line.split()[0].lower()
    if cmd == "/clear":
        agent.clear_history()
        console.print("  [dim]Conversation cleared.[/dim]")
    elif cmd == "/compact":
        result = agent.force_compact()
        console.print(f"  [dim]Compacted: {result['before']:,} → {result['after']:,} tokens[/dim]")
    elif cmd == "/context":
        _print_context(agent)
    elif cmd == "/help":
        console.print("  [dim]/clear  /compact  /context  /help  · exit or Ctrl-D to quit[/dim]")
    else:
        return False
    return True


def _repl(agent: Agent, verbose: bool):
    while True:
        try:
            line = console.input("[bold #7FA6D9]❯[/bold #7FA6D9] ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye![/dim]")
            break
        if not line:
            continue
        if line.lower() in EXIT_WORDS:
            console.print("[dim]Goodbye![/dim]")
            break
        if line.startswith("/") and _handle_command(agent, line):
            continue
        _run_turn(agent, line, verbose)


@click.command()
@click.argument("prompt", nargs=-1)
@click.option("--model", "-m", default=None, help="Model preset name or litellm model string")
@click.option("--project-dir", "-p", default=".", help="Project directory")
@click.option("--yes", "-y", "auto_approve", is_flag=True, help="Auto-approve all tool calls")
@click.option("--no-tools", is_flag=True, help="Do not send tool definitions to the model")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--list-models", is_flag=True, help="List model presets and exit")
@click.version_option(__version__, prog_name="codi-agent")
def main(prompt, model, project_dir, auto_approve, no_tools, verbose, list_models):
    """codi-agent: autonomous coding assistant for your terminal.

    With PROMPT, runs it once and exits; without, starts an interactive session.
    """
    if not Path(project_dir).is_dir():
        console.print(f"[red]Error: '{escape(project_dir)}' is not a valid directory.[/red]")
        sys.exit(1)

    config = Config.load(project_dir)
    if model:
        _resolve_preset(config, model)
    if auto_approve:
        config.auto_approve = True
    if no_tools:
        config.use_tools = False
    if verbose:
        config.verbose = True

    setup_logger(verbose=config.verbose)
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    if list_models:
        _print_models(config)
        return

    try:
        agent = build_agent(config)
    except ValueError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    if prompt:
        ok = _run_turn(agent, " ".join(prompt), config.verbose)
        sys.exit(0 if ok else 1)

    console.print(BANNER)
    console.print(f"  [dim]model {config.get_active_preset().model} · project {config.project_root}[/dim]\n")
    _repl(agent, config.verbose)


if __name__ == "__main__":
    main()
