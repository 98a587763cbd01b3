"""Line-delimited JSON protocol spoken by ``typegen parse --json --daemon``.

Every message is one line of UTF-8 text terminated by ``\\n``.

Request format (one per line, written to the worker's stdin):
    {"content": str, "file_path": str}     # parse inline document content
    <file_path>                             # bare path: parse the file on disk

Ready signal (exactly once, after startup):
    {"status": "ready"}

Response format (one per request, strictly in request order):
    {
        "success": bool,
        "errors": [str, ...],   # "<line><SPACE><message>" or free text
        "schemas": int,         # optional counters
        "enums": int,
        "imports": int,
        "file": str,            # optional, echoes the parsed path
    }

The protocol has no request id. Responses are correlated purely by order,
which is why the multiplexer never has more than one request on the wire.

The worker escapes a few characters inside error strings as literal
``\\uXXXX`` text; ``unescape_error`` turns them back before anything is
shown to a user.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from tgsdaemon.core.errors import MalformedResponse

# Separates the 1-based line number from the message in an error string.
ERROR_DELIMITER = "<SPACE>"

# Order matters: the escaped delimiter must be restored before its brackets.
ESCAPE_TABLE: Tuple[Tuple[str, str], ...] = (
    ("\\u003CSPACE\\u003E", ERROR_DELIMITER),
    ("\\u003C", "<"),
    ("\\u003E", ">"),
    ("\\u0027", "'"),
)


class ReadySignal:
    """Marker for the startup handshake record."""

    def __repr__(self) -> str:
        return "READY"


READY = ReadySignal()


@dataclass
class ResultEnvelope:
    """Decoded worker response for one request."""

    success: bool
    errors: List[str] = field(default_factory=list)
    schemas: Optional[int] = None
    enums: Optional[int] = None
    imports: Optional[int] = None
    file: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ResultEnvelope":
        errors = payload.get("errors") or []
        if not isinstance(errors, list):
            errors = [errors]
        return cls(
            success=bool(payload.get("success", False)),
            errors=[unescape_error(str(error)) for error in errors],
            schemas=_optional_int(payload.get("schemas")),
            enums=_optional_int(payload.get("enums")),
            imports=_optional_int(payload.get("imports")),
            file=payload.get("file"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict with unset counters left out (matches the wire shape)."""
        data: Dict[str, Any] = {"success": self.success, "errors": list(self.errors)}
        for name in ("schemas", "enums", "imports", "file"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def encode_request(file_path: str, content: Optional[str] = None) -> bytes:
    """
    Serialize a parse request for the worker's stdin.

    Args:
        file_path: Path of the document (used by the worker for imports and
            error reporting)
        content: Document text. When None the bare-path form is sent and
            the worker reads the file from disk.

    Returns:
        One UTF-8 encoded line, newline included
    """
    if content is None:
        return f"{file_path}\n".encode("utf-8")

    request = {
        "content": content,
        "file_path": file_path,
    }
    return (json.dumps(request) + "\n").encode("utf-8")


def decode_record(line: str) -> Union[ReadySignal, ResultEnvelope]:
    """
    Decode one framed record from the worker.

    Args:
        line: A complete record without its trailing newline

    Returns:
        READY for the startup handshake, otherwise a ResultEnvelope

    Raises:
        MalformedResponse: If the record is not a JSON object
    """
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as e:
        raise MalformedResponse(line, str(e)) from e
    except RecursionError as e:
        raise MalformedResponse(line, "nesting too deep") from e

    if not isinstance(payload, dict):
        raise MalformedResponse(line, f"expected a JSON object, got {type(payload).__name__}")

    if payload.get("status") == "ready":
        return READY

    return ResultEnvelope.from_payload(payload)


def unescape_error(error: str) -> str:
    """Reverse the worker's ``\\uXXXX`` escapes in an error string."""
    for escaped, literal in ESCAPE_TABLE:
        error = error.replace(escaped, literal)
    return error


def escape_error(error: str) -> str:
    """
    Apply the worker's escaping to an error string.

    Inverse of ``unescape_error``; useful for fixtures and for tools that
    replay worker output.
    """
    pieces = [
        piece.replace("<", "\\u003C").replace(">", "\\u003E").replace("'", "\\u0027")
        for piece in error.split(ERROR_DELIMITER)
    ]
    return ESCAPE_TABLE[0][0].join(pieces)


def parse_error(error: str) -> Tuple[Optional[int], str]:
    """
    Split ``"<line><SPACE><message>"`` into its raw 1-based line and message.

    Returns (None, error) when there is no delimiter or the prefix is not
    an integer.
    """
    head, sep, message = error.partition(ERROR_DELIMITER)
    if not sep:
        return None, error

    try:
        return int(head.strip()), message
    except ValueError:
        return None, error


def clamp_line(line: int, line_count: int) -> int:
    """Convert a 1-based wire line to a 0-based line inside the document."""
    return max(0, min(line - 1, line_count - 1))


def split_error(error: str, line_count: int) -> Tuple[int, str]:
    """
    Split an error string into a 0-based line and message.

    Errors without a usable line number anchor to line 0 and keep their
    full text. Line numbers are clamped to the document so a stale result
    cannot point past its end.

    Args:
        error: Unescaped error string from a ResultEnvelope
        line_count: Number of lines in the document the result belongs to

    Returns:
        (line, message)
    """
    line, message = parse_error(error)
    if line is None:
        return 0, message
    return clamp_line(line, line_count), message
