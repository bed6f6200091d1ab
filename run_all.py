"""
Process supervisor for SmolBot.

Runs the bot as a child process (python -m bots.smolbot.smolbot) and
restarts it when it exits unexpectedly. A bot that keeps dying right after
startup is restarted with a growing delay instead of hammering the Discord
gateway.
"""

import logging
import os
import signal
import subprocess
import sys
import time

from common.logger import setup_logging

setup_logging(level=logging.INFO)
logger = logging.getLogger("run_all")

BOTS = [
    {"name": "smolbot", "module": "bots.smolbot.smolbot"},
]

# How long to wait before restarting a crashed bot
RESTART_DELAY = 10
MAX_RESTART_DELAY = 300
# A run shorter than this counts as a crash loop
MIN_HEALTHY_UPTIME = 60

processes: dict[str, subprocess.Popen] = {}
started_at: dict[str, float] = {}
restart_delays: dict[str, float] = {}
shutting_down = False


def start_bot(bot_config: dict) -> subprocess.Popen:
    """Spawn a bot in its own interpreter so it gets a fresh event loop and Client."""
    name = bot_config["name"]
    module = bot_config["module"]

    logger.info(f"Starting {name} (python -m {module})")

    proc = subprocess.Popen(
        [sys.executable, "-m", module],
        # Inherit env vars (tokens, DATA_DIR, etc.) from parent
        env=os.environ.copy(),
        stdout=sys.stdout,
        stderr=sys.stderr,
    )
    started_at[name] = time.monotonic()

    logger.info(f"{name} started with PID {proc.pid}")
    return proc


def next_restart_delay(name: str) -> float:
    """Reset the delay after a healthy run, double it while crash looping."""
    uptime = time.monotonic() - started_at.get(name, 0.0)
    if uptime >= MIN_HEALTHY_UPTIME:
        restart_delays[name] = RESTART_DELAY
    else:
        restart_delays[name] = min(restart_delays.get(name, RESTART_DELAY / 2) * 2, MAX_RESTART_DELAY)
    return restart_delays[name]


def shutdown_all(signum=None, frame=None):
    """Gracefully terminate all child processes on SIGTERM/SIGINT."""
    global shutting_down
    shutting_down = True

    sig_name = signal.Signals(signum).name if signum else "manual"
    logger.info(f"Received {sig_name}, shutting down...")

    for name, proc in processes.items():
        if proc.poll() is None:
            logger.info(f"Sending SIGTERM to {name} (PID {proc.pid})")
            proc.terminate()

    # Give them a few seconds to save emote rankings
    deadline = time.time() + 10
    for name, proc in processes.items():
        remaining = max(0, deadline - time.time())
        try:
            proc.wait(timeout=remaining)
            logger.info(f"{name} exited with code {proc.returncode}")
        except subprocess.TimeoutExpired:
            logger.warning(f"{name} didn't exit in time, killing")
            proc.kill()

    logger.info("All bots stopped.")
    sys.exit(0)


def main():
    signal.signal(signal.SIGTERM, shutdown_all)
    signal.signal(signal.SIGINT, shutdown_all)

    logger.info(f"DATA_DIR = {os.environ.get('DATA_DIR', '(not set, using local default)')}")

    for bot_config in BOTS:
        processes[bot_config["name"]] = start_bot(bot_config)

    logger.info("Monitoring for crashes...")

    while not shutting_down:
        for bot_config in BOTS:
            name = bot_config["name"]
            proc = processes[name]

            if proc.poll() is not None:
                logger.error(f"{name} exited with code {proc.returncode}")

                if not shutting_down:
                    delay = next_restart_delay(name)
                    logger.info(f"Restarting {name} in {delay:.0f}s...")
                    time.sleep(delay)
                    processes[name] = start_bot(bot_config)

        time.sleep(5)


if __name__ == "__main__":
    main()
