"""Default process runner. Runs a planned argv directly, never via a shell."""

import asyncio
import codecs

from loguru import logger

from execgate.exec.types import RunResult

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_MAX_OUTPUT_CHARS = 10_000
READ_CHUNK_BYTES = 4096


async def _read_capped(stream: asyncio.StreamReader, limit: int) -> tuple[str, bool]:
    """
    Read a stream to EOF, keeping at most limit characters.

    Output past the limit is drained and dropped so the child never blocks on
    a full pipe. A limit of 0 or less keeps everything.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    kept: list[str] = []
    size = 0
    truncated = False
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        final = not chunk
        if truncated:
            if final:
                break
            continue
        text = decoder.decode(chunk, final=final)
        if limit > 0 and size + len(text) > limit:
            text = text[:limit - size]
            truncated = True
        kept.append(text)
        size += len(text)
        if final:
            break
    return "".join(kept), truncated


async def run_command(
    argv: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    timeout_ms: int | None = None,
    max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
) -> RunResult:
    """
    Run argv with a finite timeout.

    The process is killed when the timeout expires. Each stream is capped at
    max_output_chars. Spawn failures come back as a short error, not an
    exception.
    """
    if not argv:
        return RunResult(success=False, error="empty argv")

    timeout = (timeout_ms if timeout_ms and timeout_ms > 0 else DEFAULT_TIMEOUT_MS) / 1000

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd or None,
            env=env,
        )
    except FileNotFoundError:
        logger.error(f"Command not found: {argv[0]}")
        return RunResult(success=False, error="command not found")
    except PermissionError:
        logger.error(f"Permission denied spawning: {argv[0]}")
        return RunResult(success=False, error="permission denied")
    except OSError as e:
        logger.error(f"Command spawn error: {e}")
        return RunResult(success=False, error="spawn failed")

    try:
        (stdout_str, stdout_cut), (stderr_str, stderr_cut), _ = await asyncio.wait_for(
            asyncio.gather(
                _read_capped(process.stdout, max_output_chars),
                _read_capped(process.stderr, max_output_chars),
                process.wait(),
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning(f"Command timed out after {timeout:g} seconds: {argv[0]}")
        return RunResult(
            success=False,
            exit_code=process.returncode,
            error=f"Command timed out after {timeout:g} seconds",
            timed_out=True,
        )
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    return RunResult(
        success=process.returncode == 0,
        exit_code=process.returncode,
        stdout=stdout_str,
        stderr=stderr_str,
        truncated=stdout_cut or stderr_cut,
    )
