# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Command-line entry point for the kernel bindings test handler.

Starts the verification context, then serves line-delimited JSON requests
on stdin/stdout until EOF.  Logging goes to stderr and is off unless a
level is requested.

Usage::

    kernel-test-handler
    kernel-test-handler --chain regtest
    kernel-test-handler --debug --log-format json
    kernel-test-handler --log-level INFO --log-logger kernel_test_handler.access

"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated

import typer

from kernel_test_handler.handlers import build_dispatcher
from kernel_test_handler.logging_utils import configure_logging
from kernel_test_handler.rpc import serve_stdio
from kernel_test_handler.verifier import VerificationContext

# ---------------------------------------------------------------------------
# Option enums
# ---------------------------------------------------------------------------


class Chain(StrEnum):
    """Chain parameter sets."""

    mainnet = "mainnet"
    testnet = "testnet"
    regtest = "regtest"


class LogLevel(StrEnum):
    """Log levels accepted by ``--log-level``."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(StrEnum):
    """Log output formats."""

    text = "text"
    json = "json"


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HandlerConfig:
    """Resolved process configuration."""

    chain: Chain = Chain.mainnet
    log_level: LogLevel | None = None
    log_format: LogFormat = LogFormat.text
    log_loggers: tuple[str, ...] = ()


app = typer.Typer(
    name="kernel-test-handler",
    help="Serve script verification requests from a conformance harness over stdin/stdout.",
    add_completion=False,
)


@app.command()
def serve(
    chain: Annotated[
        Chain,
        typer.Option("--chain", envvar="KERNEL_TEST_HANDLER_CHAIN", help="Chain parameters to verify under"),
    ] = Chain.mainnet,
    log_level: Annotated[
        LogLevel | None,
        typer.Option("--log-level", envvar="KERNEL_TEST_HANDLER_LOG_LEVEL", help="Log to stderr at this level"),
    ] = None,
    debug: Annotated[bool, typer.Option("--debug", help="Shorthand for --log-level DEBUG")] = False,
    log_format: Annotated[
        LogFormat,
        typer.Option("--log-format", envvar="KERNEL_TEST_HANDLER_LOG_FORMAT", help="Log record format"),
    ] = LogFormat.text,
    log_logger: Annotated[
        list[str] | None,
        typer.Option("--log-logger", help="Logger to configure (repeatable; default: kernel_test_handler)"),
    ] = None,
) -> None:
    """Serve requests until stdin is closed."""
    config = HandlerConfig(
        chain=chain,
        log_level=LogLevel.DEBUG if debug else log_level,
        log_format=log_format,
        log_loggers=tuple(log_logger or ()),
    )
    configure_logging(
        config.log_level,
        json_format=config.log_format is LogFormat.json,
        loggers=config.log_loggers,
    )
    with VerificationContext(chain=config.chain.value) as context:
        exit_code = serve_stdio(build_dispatcher(context))
    raise typer.Exit(exit_code)


def main() -> None:
    """Run the CLI."""
    app(prog_name="kernel-test-handler")
