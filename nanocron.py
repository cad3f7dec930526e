#!/usr/bin/env python3
"""
nanocron.py

Tiny single-job cron daemon: one schedule, one command, forever.
"""

from __future__ import annotations

import argparse
import logging
import shlex
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, NoReturn, Optional, Sequence, Tuple

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

__version__ = "0.1.0"

PROG = "nanocron"
LOG_PREFIX = f"[{PROG}]"
MAX_WAIT_SECONDS = 300
CRON_FIELD_COUNT = 6
DEFAULT_PREVIEW_COUNT = 5

DESCRIPTION = """
Tiny replacement if you just need a single cronjob.

Takes two arguments: A cron-compatible schedule, and the command to be executed.
The command is executed directly (no shell involved). If you need more complex
logic, wrap your workflow into a shell script.

Behavior:

  In case the command fails, the entire cron daemon will be crashed with the same return code.
  This allows your process supervisor to be noticed about this problem.
  stdout/stderr of the command are forwarded as well.
  Commands will not be executed in parallel: The daemon waits for one to end first.
  All environment variables are inherited to the child process.
"""

EPILOG = """
Examples:

  nanocron '* * * * * *' '/bin/command-to-run-every-second'
  nanocron '0 * * * * *' '/bin/command-to-run-every-minute'
  nanocron '0 0 * * * *' '/bin/command-to-run-every-hour'
  nanocron '0 0 0 * * *' '/bin/command-to-run-every-day'
  nanocron '0 0 0 1 * *' '/bin/command-to-run-every-first-of-the-month'
"""


class NanocronError(Exception):
    """Base error for nanocron. Always fatal."""

    exit_code = 1

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class ArgumentError(NanocronError):
    """Wrong number of positional arguments."""


class InvalidSchedule(NanocronError):
    """Cron expression failed to compile."""


class TokenizationError(NanocronError):
    """Command string could not be split into a program and arguments."""


class ScheduleExhausted(NanocronError):
    """No future occurrence can be computed."""


class WaitTimeComputationError(NanocronError):
    """Clock arithmetic produced a non-positive wait."""


class SpawnFailure(NanocronError):
    """The OS refused to start the command."""


class SignalTermination(NanocronError):
    """The child was killed by a signal."""


class ChildNonZeroExit(NanocronError):
    """The child exited normally with a non-zero code; its code is ours."""

    def __init__(self, code: int):
        super().__init__(f"Child exited with code {code}", exit_code=code)
        self.code = code


class _MaxLevelFilter(logging.Filter):
    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def setup_logging(log_file: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(PROG)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(f"%(asctime)s %(levelname)s {LOG_PREFIX} %(message)s")
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    stdout_handler.addFilter(_MaxLevelFilter(logging.ERROR))
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    stderr_handler.setLevel(logging.ERROR)
    logger.addHandler(stdout_handler)
    logger.addHandler(stderr_handler)
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


logger = logging.getLogger(PROG)
UTC = timezone.utc


@dataclass(frozen=True)
class CompiledSchedule:
    expression: str


@dataclass(frozen=True)
class CommandSpec:
    text: str
    program: str
    args: Tuple[str, ...]

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]


@dataclass
class ExecutionOutcome:
    return_code: Optional[int]
    duration_seconds: float
    signal: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.return_code == 0


NextFire = Callable[[datetime], datetime]
ProcessRunner = Callable[[CommandSpec], ExecutionOutcome]
Clock = Callable[[], datetime]
Sleeper = Callable[[float], None]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def compile_schedule(expression: str) -> CompiledSchedule:
    """Validate a seconds-resolution cron expression.

    Fields are ``second minute hour day-of-month month day-of-week``.
    """
    fields = expression.split()
    if len(fields) != CRON_FIELD_COUNT:
        raise InvalidSchedule(
            f"Invalid schedule '{expression}': expected {CRON_FIELD_COUNT} fields "
            f"(sec min hour day month weekday), got {len(fields)}"
        )
    try:
        croniter(expression, datetime(1970, 1, 1, tzinfo=UTC), second_at_beginning=True)
    except CroniterBadCronError as exc:
        raise InvalidSchedule(f"Invalid schedule '{expression}': {exc}") from exc
    return CompiledSchedule(expression=expression)


def next_run_after(compiled: CompiledSchedule, after_utc: datetime) -> datetime:
    after_utc = _ensure_aware_utc(after_utc)
    iterator = croniter(compiled.expression, after_utc, second_at_beginning=True)
    # croniter truncates sub-second precision; skip anything not strictly later.
    for _ in range(3):
        try:
            nxt = iterator.get_next(datetime)
        except CroniterBadDateError as exc:
            raise ScheduleExhausted(f"Failed to calculate next execution time: {exc}") from exc
        nxt = _ensure_aware_utc(nxt)
        if nxt > after_utc:
            return nxt
    raise ScheduleExhausted("Failed to calculate next execution time")


def next_run_times(compiled: CompiledSchedule, count: int, now_utc: Optional[datetime] = None) -> List[datetime]:
    cursor = _ensure_aware_utc(now_utc or utc_now())
    runs: List[datetime] = []
    while len(runs) < count:
        try:
            cursor = next_run_after(compiled, cursor)
        except ScheduleExhausted:
            break
        runs.append(cursor)
    return runs


def split_command(text: str) -> CommandSpec:
    try:
        tokens = shlex.split(text)
    except ValueError as exc:
        raise TokenizationError(f"Failed to properly split command '{text}': {exc}") from exc
    if not tokens:
        raise TokenizationError(f"Failed to properly split command '{text}': no program given")
    return CommandSpec(text=text, program=tokens[0], args=tuple(tokens[1:]))


def run_command(command: CommandSpec) -> ExecutionOutcome:
    started = time.monotonic()
    try:
        result = subprocess.run(command.argv, stdin=subprocess.DEVNULL, check=False)
    except OSError as exc:
        reason = exc.strerror or str(exc)
        raise SpawnFailure(f"Failed to execute binary '{command.program}': {reason}") from exc
    duration = time.monotonic() - started
    if result.returncode < 0:
        return ExecutionOutcome(return_code=None, duration_seconds=duration, signal=-result.returncode)
    return ExecutionOutcome(return_code=result.returncode, duration_seconds=duration)


def check_outcome(outcome: ExecutionOutcome) -> None:
    if outcome.success:
        return
    if outcome.return_code is not None:
        raise ChildNonZeroExit(outcome.return_code)
    detail = ""
    if outcome.signal is not None:
        try:
            detail = f" ({signal.Signals(outcome.signal).name})"
        except ValueError:
            detail = f" (signal {outcome.signal})"
    raise SignalTermination(f"Child process was killed using a signal{detail}")


def compute_wait(next_fire: datetime, now: datetime) -> float:
    delta = next_fire - now
    if delta <= timedelta(0):
        raise WaitTimeComputationError(
            f"Failed to calculate wait time: next execution {next_fire.isoformat()} "
            f"is not after {now.isoformat()}"
        )
    return delta.total_seconds()


def clamp_wait(seconds: float) -> float:
    # Re-check the clock at least every few minutes in case it jumps.
    return min(seconds, float(MAX_WAIT_SECONDS))


def run_loop(
    next_fire: NextFire,
    command: CommandSpec,
    runner: ProcessRunner = run_command,
    clock: Clock = utc_now,
    sleep: Sleeper = time.sleep,
) -> None:
    """Wait for each fire time and run the command; never returns normally.

    ``next_fire`` maps "now" to the next fire instant. Every failure is
    raised as a :class:`NanocronError` and ends the loop.
    """
    next_at = next_fire(clock())
    while True:
        now = clock()
        if next_at > now:
            wait_seconds = clamp_wait(compute_wait(next_at, now))
            logger.info(
                "Waiting %.3fs | Next planned execution: %s",
                wait_seconds,
                next_at.isoformat(),
            )
            sleep(wait_seconds)
            continue

        logger.info("Executing: '%s'", command.text)
        outcome = runner(command)
        check_outcome(outcome)
        logger.info("Command finished successfully in %.3fs", outcome.duration_seconds)
        next_at = next_fire(clock())


def command_daemon(compiled: CompiledSchedule, command: CommandSpec) -> int:
    logger.info("Starting up")
    logger.info("schedule = %s", compiled.expression)
    logger.info("command  = %s", command.text)

    def next_fire(now: datetime) -> datetime:
        return next_run_after(compiled, now)

    run_loop(next_fire, command)
    return 0


def command_preview(compiled: CompiledSchedule, count: int) -> int:
    runs = next_run_times(compiled, count, now_utc=utc_now())
    print(f"Schedule: {compiled.expression}")
    print(f"Next {count} run(s):")
    if not runs:
        print("- none")
    for run_dt in runs:
        print(f"- {run_dt.isoformat()}")
    return 0


def validate_arguments(arguments: Sequence[str]) -> Tuple[str, str]:
    if not arguments:
        raise ArgumentError(
            "Missing both required arguments (schedule + command). Use --help to get more information."
        )
    if len(arguments) != 2:
        raise ArgumentError(
            "Expecting exactly 2 arguments: The schedule, and the command to execute. "
            "Use --help to get more information."
        )
    return arguments[0], arguments[1]


class _ArgumentParser(argparse.ArgumentParser):
    """Reports usage errors as ArgumentError so they exit with 1, not 2."""

    def error(self, message: str) -> NoReturn:
        raise ArgumentError(f"{message}. Use --help to get more information.")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = _ArgumentParser(
        prog=PROG,
        usage=f"{PROG} [options] schedule command",
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "arguments",
        nargs="*",
        metavar="schedule command",
        help="A 6-field cron schedule (with seconds) and the command to execute",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-file", help="Also append log output to this file")
    parser.add_argument(
        "--preview",
        type=int,
        metavar="COUNT",
        help=f"Print the next COUNT execution times and exit (e.g. {DEFAULT_PREVIEW_COUNT})",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = parse_args(argv)
    except ArgumentError as exc:
        setup_logging()
        logger.error("Error: %s", exc.message)
        return exc.exit_code
    setup_logging(args.log_file)

    try:
        expression, command_text = validate_arguments(args.arguments)
        compiled = compile_schedule(expression)
        if args.preview is not None:
            if args.preview <= 0:
                raise ArgumentError("--preview must be >= 1")
            return command_preview(compiled, args.preview)
        command = split_command(command_text)
        return command_daemon(compiled, command)
    except NanocronError as exc:
        logger.error("Error: %s", exc.message)
        return exc.exit_code
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
