"""Shell command parsing for allowlist analysis.

Nothing here runs a shell. Commands are scanned character by character with
POSIX quoting rules; anything whose meaning depends on expansion or
redirection is rejected instead of guessed at.
"""

from execgate.exec.resolver import (
    is_windows_platform,
    resolve_command_resolution_from_argv,
)
from execgate.exec.types import CommandAnalysis, CommandSegment, DenyReason

DOUBLE_QUOTE_ESCAPES = frozenset(["\\", '"', "$", "`", "\n", "\r"])

# Always rejected outside quotes by the pipeline pass
DISALLOWED_PIPELINE_TOKENS = frozenset([">", "<", "`", "\n", "\r", "(", ")"])

WINDOWS_UNSUPPORTED_TOKENS = frozenset(["&", "|", "<", ">", "^", "(", ")", "%", "!", "\n", "\r"])

HEREDOC_DELIMITER_STOP = frozenset(["|", "&", ";", "<", ">"])


class _Fail(Exception):
    """Internal: aborts a scan with a reason. Never escapes this module."""

    def __init__(self, reason: str, code: DenyReason):
        super().__init__(reason)
        self.reason = reason
        self.code = code


def _unsupported(token: str) -> _Fail:
    return _Fail(f"unsupported shell token: {token}", DenyReason.UNSUPPORTED_CONSTRUCT)


def _failed(reason: str, code: DenyReason) -> CommandAnalysis:
    return CommandAnalysis(ok=False, reason=reason, reason_code=code)


# ── Heredoc helpers ─────────────────────────────────────────────────


def _parse_heredoc_delimiter(source: str, start: int) -> tuple[str, int] | None:
    """
    Read a heredoc delimiter word at start. Returns (delimiter, end index).

    Quote removal applies to the whole word, as the shell does: `E'F'`,
    `"E"F` and `E\\F` all name the delimiter `EF`.
    """
    i = start
    while i < len(source) and source[i] in " \t":
        i += 1

    delimiter = ""
    quote: str | None = None
    while i < len(source):
        ch = source[i]
        if ch in "\r\n":
            if quote:
                return None
            break
        if quote == "'":
            if ch == "'":
                quote = None
            else:
                delimiter += ch
            i += 1
            continue
        if quote == '"':
            if ch == '"':
                quote = None
            elif ch == "\\" and i + 1 < len(source) and source[i + 1] in DOUBLE_QUOTE_ESCAPES:
                delimiter += source[i + 1]
                i += 1
            else:
                delimiter += ch
            i += 1
            continue
        if ch.isspace() or ch in HEREDOC_DELIMITER_STOP:
            break
        if ch in ("'", '"'):
            quote = ch
        elif ch == "\\" and i + 1 < len(source):
            delimiter += source[i + 1]
            i += 1
        else:
            delimiter += ch
        i += 1

    if quote or not delimiter:
        return None
    return delimiter, i


def _consume_heredoc_bodies(source: str, start: int, pending: list[tuple[str, bool]]) -> int:
    """
    Skip heredoc bodies starting at the newline at `start`.

    Returns the index just past the last delimiter line. Raises when a body
    is unterminated or when more command text follows the bodies.
    """
    i = start
    if source[i] == "\r" and i + 1 < len(source) and source[i + 1] == "\n":
        i += 1
    i += 1

    queue = list(pending)
    while queue:
        if i >= len(source):
            raise _Fail("unterminated heredoc", DenyReason.PARSE_ERROR)
        end = i
        while end < len(source) and source[end] not in "\r\n":
            end += 1
        line = source[i:end]
        delimiter, strip_tabs = queue[0]
        if strip_tabs:
            line = line.lstrip("\t")
        if line == delimiter:
            queue.pop(0)
        if end < len(source) and source[end] == "\r" and end + 1 < len(source) and source[end + 1] == "\n":
            end += 1
        i = end + 1

    if source[i:].strip():
        raise _unsupported("newline")
    return min(i, len(source))


def _scan_heredoc_operator(source: str, i: int, pending: list[tuple[str, bool]]) -> int:
    """Handle `<<` / `<<-` at i. Returns the index after the delimiter."""
    j = i + 2
    strip_tabs = False
    if j < len(source) and source[j] == "-":
        strip_tabs = True
        j += 1
    parsed = _parse_heredoc_delimiter(source, j)
    if parsed is None:
        raise _Fail("invalid heredoc delimiter", DenyReason.PARSE_ERROR)
    delimiter, end = parsed
    pending.append((delimiter, strip_tabs))
    return end


# ── Chain splitting (&&, ;) ─────────────────────────────────────────


def _split_chain(command: str) -> list[str]:
    parts: list[str] = []
    buf: list[str] = []
    in_single = in_double = escaped = False
    pending: list[tuple[str, bool]] = []

    def push_part(operator: str) -> None:
        text = "".join(buf).strip()
        buf.clear()
        if not text:
            raise _Fail(f"dangling chain operator: {operator}", DenyReason.PARSE_ERROR)
        parts.append(text)

    i = 0
    n = len(command)
    while i < n:
        ch = command[i]
        nxt = command[i + 1] if i + 1 < n else ""

        if escaped:
            buf.append(ch)
            escaped = False
            i += 1
            continue
        if in_single:
            if ch == "'":
                in_single = False
            buf.append(ch)
            i += 1
            continue
        if in_double:
            if ch == "\\" and nxt in DOUBLE_QUOTE_ESCAPES:
                buf.append(ch + nxt)
                i += 2
                continue
            if ch == '"':
                in_double = False
            buf.append(ch)
            i += 1
            continue

        if ch == "\\":
            escaped = True
            buf.append(ch)
            i += 1
            continue
        if ch == "'":
            in_single = True
            buf.append(ch)
            i += 1
            continue
        if ch == '"':
            in_double = True
            buf.append(ch)
            i += 1
            continue

        if ch in "\r\n" and pending:
            end = _consume_heredoc_bodies(command, i, pending)
            buf.append(command[i:end])
            pending.clear()
            i = end
            continue
        if ch == "<" and nxt == "<":
            end = _scan_heredoc_operator(command, i, pending)
            buf.append(command[i:end])
            i = end
            continue

        if ch == "&" and nxt == "&":
            push_part("&&")
            i += 2
            continue
        if ch == "|" and nxt == "|":
            raise _unsupported("||")
        if ch == ";":
            push_part(";")
            i += 1
            continue

        buf.append(ch)
        i += 1

    if escaped or in_single or in_double:
        raise _Fail("unterminated shell quote/escape", DenyReason.PARSE_ERROR)

    tail = "".join(buf).strip()
    if parts and not tail:
        raise _Fail("dangling chain operator at end of command", DenyReason.PARSE_ERROR)
    if parts:
        parts.append(tail)
        return parts
    return ["".join(buf).strip()]


def split_command_chain(command: str) -> tuple[bool, str | None, list[str]]:
    """
    Split a command by chain operators (&&, ;) while respecting quotes.

    Returns (ok, reason, parts). A command without operators is a single
    part. `||` is rejected; a dangling operator is a failure.
    """
    try:
        return True, None, _split_chain(command)
    except _Fail as e:
        return False, e.reason, []


# ── Pipeline splitting (|) ──────────────────────────────────────────


def _split_pipeline(command: str) -> list[tuple[str, bool]]:
    segments: list[tuple[str, bool]] = []
    buf: list[str] = []
    in_single = in_double = escaped = False
    has_heredoc = False
    pending: list[tuple[str, bool]] = []

    def push_part() -> None:
        nonlocal has_heredoc
        text = "".join(buf).strip()
        if text:
            segments.append((text, has_heredoc))
        buf.clear()
        has_heredoc = False

    i = 0
    n = len(command)
    while i < n:
        ch = command[i]
        nxt = command[i + 1] if i + 1 < n else ""

        if escaped:
            buf.append(ch)
            escaped = False
            i += 1
            continue
        if not in_single and not in_double and ch == "\\":
            escaped = True
            buf.append(ch)
            i += 1
            continue
        if in_single:
            if ch == "'":
                in_single = False
            buf.append(ch)
            i += 1
            continue
        if in_double:
            if ch == "\\" and nxt in DOUBLE_QUOTE_ESCAPES:
                buf.append(ch + nxt)
                i += 2
                continue
            if ch == "$" and nxt == "(":
                raise _unsupported("$()")
            if ch == "`":
                raise _unsupported("`")
            if ch in "\r\n":
                raise _unsupported("newline")
            if ch == '"':
                in_double = False
            buf.append(ch)
            i += 1
            continue
        if ch == "'":
            in_single = True
            buf.append(ch)
            i += 1
            continue
        if ch == '"':
            in_double = True
            buf.append(ch)
            i += 1
            continue

        if ch in "\r\n" and pending:
            # Bodies are data for the command, never part of its argv.
            i = _consume_heredoc_bodies(command, i, pending)
            pending.clear()
            continue

        if ch == "|" and nxt == "|":
            raise _unsupported("||")
        if ch == "|" and nxt == "&":
            raise _unsupported("|&")
        if ch == "|":
            if not "".join(buf).strip():
                raise _Fail("empty pipeline segment", DenyReason.PARSE_ERROR)
            push_part()
            i += 1
            continue
        if ch in ("&", ";"):
            raise _unsupported(ch)
        if ch == "<" and nxt == "<":
            end = _scan_heredoc_operator(command, i, pending)
            buf.append(command[i:end])
            has_heredoc = True
            i = end
            continue
        if ch in DISALLOWED_PIPELINE_TOKENS:
            raise _unsupported("newline" if ch in "\r\n" else ch)
        if ch == "$" and nxt == "(":
            raise _unsupported("$()")
        buf.append(ch)
        i += 1

    if pending:
        raise _Fail("unterminated heredoc", DenyReason.PARSE_ERROR)
    if escaped or in_single or in_double:
        raise _Fail("unterminated shell quote/escape", DenyReason.PARSE_ERROR)

    if segments and not "".join(buf).strip():
        raise _Fail("empty pipeline segment", DenyReason.PARSE_ERROR)
    push_part()
    if not segments:
        raise _Fail("empty command", DenyReason.PARSE_ERROR)
    return segments


def split_shell_pipeline(command: str) -> tuple[bool, str | None, list[str]]:
    """Split one chain part into pipeline segments. Returns (ok, reason, segments)."""
    try:
        return True, None, [raw for raw, _ in _split_pipeline(command)]
    except _Fail as e:
        return False, e.reason, []


# ── Tokenizers ──────────────────────────────────────────────────────


def tokenize_shell_segment(segment: str) -> list[str] | None:
    """Tokenize one segment, removing quotes and applying escapes."""
    tokens: list[str] = []
    buf: list[str] = []
    started = False
    in_single = in_double = escaped = False

    def push_token() -> None:
        nonlocal started
        if started:
            tokens.append("".join(buf))
        buf.clear()
        started = False

    i = 0
    while i < len(segment):
        ch = segment[i]
        if escaped:
            buf.append(ch)
            escaped = False
            i += 1
            continue
        if not in_single and not in_double and ch == "\\":
            escaped = True
            started = True
            i += 1
            continue
        if in_single:
            if ch == "'":
                in_single = False
            else:
                buf.append(ch)
            i += 1
            continue
        if in_double:
            nxt = segment[i + 1] if i + 1 < len(segment) else ""
            if ch == "\\" and nxt in DOUBLE_QUOTE_ESCAPES:
                buf.append(nxt)
                i += 2
                continue
            if ch == '"':
                in_double = False
            else:
                buf.append(ch)
            i += 1
            continue
        if ch == "'":
            in_single = True
            started = True
            i += 1
            continue
        if ch == '"':
            in_double = True
            started = True
            i += 1
            continue
        if ch.isspace():
            push_token()
            i += 1
            continue
        buf.append(ch)
        started = True
        i += 1

    if escaped or in_single or in_double:
        return None
    push_token()
    return tokens


def find_windows_unsupported_token(command: str) -> str | None:
    for ch in command:
        if ch in WINDOWS_UNSUPPORTED_TOKENS:
            return "newline" if ch in "\r\n" else ch
    return None


def tokenize_windows_segment(segment: str) -> list[str] | None:
    """cmd.exe-style split: quotes toggle, no backslash escaping."""
    tokens: list[str] = []
    buf: list[str] = []
    in_double = False

    for ch in segment:
        if ch == '"':
            in_double = not in_double
            continue
        if not in_double and ch.isspace():
            if buf:
                tokens.append("".join(buf))
                buf.clear()
            continue
        buf.append(ch)

    if in_double:
        return None
    if buf:
        tokens.append("".join(buf))
    return tokens


# ── Analysis ────────────────────────────────────────────────────────


def _analyze_windows(
    command: str,
    cwd: str | None,
    env: dict[str, str] | None,
    platform: str | None,
) -> CommandAnalysis:
    unsupported = find_windows_unsupported_token(command)
    if unsupported:
        return _failed(
            f"unsupported windows shell token: {unsupported}",
            DenyReason.UNSUPPORTED_CONSTRUCT,
        )
    argv = tokenize_windows_segment(command)
    if argv is None:
        return _failed("unterminated windows quote", DenyReason.PARSE_ERROR)
    if not argv:
        return _failed("empty command", DenyReason.PARSE_ERROR)
    segment = CommandSegment(
        raw=command.strip(),
        argv=argv,
        resolution=resolve_command_resolution_from_argv(argv, cwd, env, platform),
    )
    return CommandAnalysis(ok=True, segments=[segment], chains=[[segment]])


def analyze_shell_command(
    command: str,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    platform: str | None = None,
) -> CommandAnalysis:
    """
    Analyze a shell command string.

    POSIX commands are split by chain operators first, then by pipes, then
    tokenized. Windows commands get a strict single-segment grammar. Any
    failure is total: no partial segment list is returned.
    """
    if is_windows_platform(platform):
        return _analyze_windows(command, cwd, env, platform)

    try:
        parts = _split_chain(command)
        chains: list[list[CommandSegment]] = []
        for part in parts:
            group: list[CommandSegment] = []
            for raw, heredoc in _split_pipeline(part):
                argv = tokenize_shell_segment(raw)
                if not argv:
                    raise _Fail("unable to parse shell segment", DenyReason.PARSE_ERROR)
                group.append(CommandSegment(
                    raw=raw,
                    argv=argv,
                    resolution=resolve_command_resolution_from_argv(argv, cwd, env, platform),
                    heredoc=heredoc,
                ))
            chains.append(group)
    except _Fail as e:
        return _failed(e.reason, e.code)

    segments = [segment for group in chains for segment in group]
    return CommandAnalysis(ok=True, segments=segments, chains=chains)


def analyze_argv_command(
    argv: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    platform: str | None = None,
) -> CommandAnalysis:
    """Explicit argv bypasses the grammar: one segment, one chain group."""
    tokens = [entry for entry in argv if entry.strip()]
    if not tokens:
        return _failed("empty argv", DenyReason.PARSE_ERROR)
    segment = CommandSegment(
        raw=" ".join(tokens),
        argv=tokens,
        resolution=resolve_command_resolution_from_argv(tokens, cwd, env, platform),
    )
    return CommandAnalysis(ok=True, segments=[segment], chains=[[segment]])
