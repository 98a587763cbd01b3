"""Turn worker error strings into line-anchored diagnostics.

This is the thin seam between the session and whatever presents results
(an editor, the CLI). Ranges follow the editor convention: a located error
spans its line from the first non-whitespace character to the end; an
unlocated one marks the first character of the document.
"""

from dataclasses import dataclass
from typing import List, Sequence

from tgsdaemon.daemon.protocol import ResultEnvelope, clamp_line, parse_error


@dataclass(frozen=True)
class Diagnostic:
    line: int
    start_column: int
    end_column: int
    message: str
    severity: str = "error"


def errors_to_diagnostics(errors: Sequence[str], text: str) -> List[Diagnostic]:
    """
    Map error strings onto the document they were produced for.

    Args:
        errors: Unescaped error strings (ResultEnvelope.errors)
        text: The document content that was submitted

    Returns:
        One Diagnostic per error, in the same order
    """
    lines = text.split("\n") if text else [""]
    diagnostics: List[Diagnostic] = []

    for error in errors:
        wire_line, message = parse_error(error)
        if wire_line is None:
            diagnostics.append(Diagnostic(line=0, start_column=0, end_column=1, message=message))
            continue

        line = clamp_line(wire_line, len(lines))
        source_line = lines[line].rstrip("\r")
        first_char = len(source_line) - len(source_line.lstrip())
        diagnostics.append(
            Diagnostic(
                line=line,
                start_column=first_char,
                end_column=len(source_line),
                message=message,
            )
        )

    return diagnostics


def result_to_diagnostics(result: ResultEnvelope, text: str) -> List[Diagnostic]:
    """Diagnostics for a result; empty when the parse succeeded cleanly."""
    return errors_to_diagnostics(result.errors, text)


def failure_diagnostic(error: Exception) -> Diagnostic:
    """Single generic diagnostic for a request that never got a result."""
    return Diagnostic(line=0, start_column=0, end_column=1, message=f"Typegen daemon error: {error}")
