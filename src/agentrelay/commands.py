"""Chat commands handled by the orchestrator without invoking an agent.

``/model`` inspects or switches the group's provider, ``/clear`` and
``/reset`` drop the group's conversation state, ``/help`` lists commands.
"""

from __future__ import annotations

from dataclasses import dataclass

from agentrelay.logger import logger
from agentrelay.providers import ProviderRegistry, UnknownProviderError, available_providers
from agentrelay.state import GroupState


@dataclass
class CommandResult:
    handled: bool
    response: str | None = None


_NOT_HANDLED = CommandResult(handled=False)


async def handle_command(
    text: str,
    folder: str,
    is_privileged: bool,
    providers: ProviderRegistry,
    state: GroupState,
) -> CommandResult:
    """Run *text* as a command if it is one. Returns ``handled=False`` otherwise."""
    words = text.strip().split()
    if not words:
        return _NOT_HANDLED
    command, args = words[0].lower(), words[1:]

    if command == "/model":
        response = await _handle_model(args, folder, is_privileged, providers)
        return CommandResult(handled=True, response=response)

    if command in ("/clear", "/reset") and not args:
        await clear_context(folder, providers, state)
        return CommandResult(handled=True, response="Context cleared. Starting fresh conversation.")

    if command == "/help" and not args:
        return CommandResult(handled=True, response=_help_text(is_privileged))

    return _NOT_HANDLED


async def clear_context(folder: str, providers: ProviderRegistry, state: GroupState) -> None:
    """Forget every provider's session for *folder*, in the store and on disk."""
    await state.clear_session(folder)
    for provider in providers.all_providers():
        try:
            provider.reset_session_state(folder)
        except OSError as exc:
            logger.error(
                "Failed to clear provider session state",
                provider=provider.name,
                folder=folder,
                err=str(exc),
            )
    logger.info("Context cleared", folder=folder)


def _help_text(is_privileged: bool) -> str:
    lines = [
        "*Available Commands*",
        "",
        "*/clear* or */reset* - Clear conversation history and start fresh",
        f"*/model* - Show/switch AI model ({' or '.join(available_providers())})",
        "*/help* - Show this help message",
    ]
    if is_privileged:
        lines += ["", "*Main group only:*", "*/model global <provider>* - Set default model for all groups"]
    return "\n".join(lines)


def _model_help(is_privileged: bool) -> str:
    names = available_providers()
    lines = ["*/model* - AI model selection", "", "Commands:", "• /model status - Show current model"]
    lines += [f"• /model {name} - Switch to {name}" for name in names]
    lines.append("• /model reset - Use global default")
    if is_privileged:
        lines.append(f"• /model global <{'|'.join(names)}> - Set global default")
    return "\n".join(lines)


def _model_status(folder: str, is_privileged: bool, providers: ProviderRegistry) -> str:
    current = providers.provider_name_for(folder)
    suffix = "" if providers.has_override(folder) else " (using global default)"
    lines = [
        "*Model Status*",
        f"Current: *{current}*{suffix}",
        f"Global default: {providers.global_default}",
        f"Available: {', '.join(available_providers())}",
    ]
    overrides = providers.overrides
    if is_privileged and overrides:
        lines += ["", "Group overrides:"]
        lines += [f"- {group}: {name}" for group, name in sorted(overrides.items())]
    return "\n".join(lines)


async def _handle_model(
    args: list[str],
    folder: str,
    is_privileged: bool,
    providers: ProviderRegistry,
) -> str:
    subcommand = args[0].lower() if args else "status"

    if subcommand == "status":
        return _model_status(folder, is_privileged, providers)

    if subcommand == "help":
        return _model_help(is_privileged)

    if subcommand in ("reset", "clear"):
        await providers.clear_override(folder)
        return f"Reset to global default (*{providers.global_default}*) for this group."

    if subcommand == "global":
        if not is_privileged:
            return "The /model global command can only be used from the main group."
        target = args[1].lower() if len(args) > 1 else ""
        try:
            await providers.set_global_default(target)
        except UnknownProviderError:
            return f"Usage: /model global <{'|'.join(available_providers())}>"
        return f"Global default set to *{target}*. New groups will use {target} by default."

    if subcommand in available_providers():
        await providers.set_override(folder, subcommand)
        return f"Switched to *{subcommand}* for this group. Future messages will use {subcommand}."

    return f"Unknown /model subcommand: {subcommand}\n\n{_model_help(is_privileged)}"
