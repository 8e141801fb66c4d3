"""Task handlers loaded by name inside isolated child processes during tests."""

import time


def echo(ctx):
    return {"summary": f"echo {ctx.parameters.get('value')}", "attachments": []}


def with_progress(ctx):
    ctx.report_progress(10, "Collecting data", step="collect")
    ctx.report_progress(80, "Building report", step="build")
    return {"summary": "done", "attachments": []}


def boom(ctx):
    ctx.report_progress(50, "About to fail", step="explode")
    raise KeyError("missing column")


def sleep_forever(ctx):
    time.sleep(60)


def allocate(ctx):
    blob = bytearray(ctx.parameters.get("mb", 2048) * 1024 * 1024)
    return len(blob)


def cooperative(ctx):
    deadline = time.monotonic() + 30
    while time.monotonic() < deadline:
        if ctx.cancelled:
            return {"summary": "stopped early"}
        time.sleep(0.02)
    return {"summary": "ran to completion"}


def exit_hard(ctx):
    import os
    os._exit(3)
