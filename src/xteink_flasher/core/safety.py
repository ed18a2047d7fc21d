"""
Safety context and write gating for device writes.

Centralizes the confirmation rules so every command that writes to the
device (flash firmware, restore flash, swap boot partition) enforces the
same checks.
"""

import sys
from dataclasses import dataclass, field
from typing import Callable, List, Optional

# Confirmation token required for non-interactive writes
CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(Exception):
    """
    Raised when a write operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why write was denied
        details: Additional context (operation, target, etc.)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Everything needed to decide whether a device write may proceed.

    Attributes:
        write_enabled: Whether the --write flag was provided
        confirmation_token: For non-interactive mode, must match CONFIRMATION_TOKEN
        interactive: Whether the user can be prompted
        warnings: Warning messages to show alongside the confirmation
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = True
    warnings: List[str] = field(default_factory=list)

    # CLI sets these to prompt/display functions
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def to_details_dict(self, operation: str, target: str = "", bytes_length: int = 0) -> dict:
        details = {
            "operation": operation,
            "target": target,
            "bytes_length": bytes_length,
        }
        if self.warnings:
            details["warnings"] = self.warnings
        return details


def require_write_permission(
    ctx: SafetyContext,
    operation: str,
    target: str = "",
    bytes_length: int = 0,
) -> None:
    """
    Enforce write permission rules.

    Rules enforced:
    1. Write must be explicitly enabled
    2. If a confirmation token is present it must match exactly
    3. Otherwise an interactive prompt must return the token

    Raises:
        WritePermissionError: If write is not permitted
    """
    details = ctx.to_details_dict(operation, target, bytes_length)

    if not ctx.write_enabled:
        raise WritePermissionError(
            "Write operation requires explicit permission. Use the --write flag.",
            details=details,
        )

    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    if not ctx.interactive:
        raise WritePermissionError(
            "Non-interactive mode requires --confirm WRITE.",
            details=details,
        )

    if ctx.show_details:
        ctx.show_details(details)

    if ctx.prompt_confirmation is None:
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set.",
            details=details,
        )

    user_input = ctx.prompt_confirmation(
        f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
    )
    if user_input.strip().upper() != CONFIRMATION_TOKEN:
        raise WritePermissionError(
            "Confirmation failed. Write aborted by user.",
            details=details,
        )


def create_cli_safety_context(
    write_flag: bool,
    confirmation_token: Optional[str] = None,
    prompt_confirmation: Optional[Callable[[str], str]] = None,
    show_details: Optional[Callable[[dict], None]] = None,
) -> SafetyContext:
    """
    Create a SafetyContext configured for CLI usage.

    Interactive only when stdin is a TTY and no token was given.
    """
    interactive = sys.stdin.isatty() and confirmation_token is None

    return SafetyContext(
        write_enabled=write_flag,
        confirmation_token=confirmation_token,
        interactive=interactive,
        prompt_confirmation=prompt_confirmation,
        show_details=show_details,
    )
