"""
Terminal consent prompts for NeuroDesk.

Provides the blocking terminal side of the consent channel:
- Yes/no approval of commands and plans
- The administrator password prompt
"""

from typing import Optional
from enum import Enum

from prompt_toolkit import prompt
from prompt_toolkit.validation import Validator, ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from ..consent import ConsentBoundary, ConsentKind, ConsentRequest


class ConfirmationResult(Enum):
    """Result of a confirmation prompt."""
    YES = "yes"
    NO = "no"
    CANCELLED = "cancelled"


class YesNoValidator(Validator):
    """Validator for yes/no input."""

    def validate(self, document):
        text = document.text.lower().strip()
        if text and text not in ("y", "yes", "n", "no"):
            raise ValidationError(
                message="Please enter 'yes' or 'no' (or just press Enter for default)"
            )


class ConfirmationPrompt:
    """Handles user confirmations and password input."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def confirm(
        self,
        message: str,
        default: bool = False,
        warning: Optional[str] = None
    ) -> ConfirmationResult:
        """
        Ask for yes/no confirmation.

        Args:
            message: The question to ask
            default: Default value if user just presses Enter
            warning: Optional warning to show

        Returns:
            ConfirmationResult
        """
        if warning:
            self.console.print(f"[yellow]⚠ {warning}[/yellow]")

        default_str = "Y/n" if default else "y/N"
        prompt_text = f"{message} [{default_str}]: "

        try:
            response = prompt(
                prompt_text,
                validator=YesNoValidator(),
                validate_while_typing=False
            ).lower().strip()

            if not response:
                return ConfirmationResult.YES if default else ConfirmationResult.NO
            elif response in ("y", "yes"):
                return ConfirmationResult.YES
            else:
                return ConfirmationResult.NO

        except KeyboardInterrupt:
            self.console.print("\n[dim]Cancelled[/dim]")
            return ConfirmationResult.CANCELLED
        except EOFError:
            return ConfirmationResult.CANCELLED

    def get_password(self, message: str) -> Optional[str]:
        """
        Read a password without echo.

        Returns:
            The password, or None if cancelled or empty
        """
        try:
            response = prompt(f"{message}: ", is_password=True)
            return response if response else None
        except KeyboardInterrupt:
            self.console.print("\n[dim]Cancelled[/dim]")
            return None
        except EOFError:
            return None


class TerminalConsentBoundary(ConsentBoundary):
    """Resolves consent requests with blocking terminal prompts."""

    def __init__(self, prompts: Optional[ConfirmationPrompt] = None):
        self.prompts = prompts or ConfirmationPrompt()

    @property
    def console(self) -> Console:
        return self.prompts.console

    def present(self, request: ConsentRequest) -> None:
        if request.kind is ConsentKind.PASSWORD:
            self.console.print(Panel(Text(request.prompt), title="Administrator password", border_style="red"))
            request.resolve(self.prompts.get_password("Password"))
            return

        self.console.print(Panel(Text(request.prompt), title="Approval needed", border_style="yellow"))
        result = self.prompts.confirm("Proceed?", default=False)
        request.resolve(result is ConfirmationResult.YES)
