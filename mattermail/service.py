# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""MatterMail service.

Wires one mail-to-chat bridge per configured profile and runs each in its
own daemon thread until SIGINT or SIGTERM.

Usage:
    mattermail [--config PATH] [--debug]
"""

import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

import httpx

from mattermail import __version__
from mattermail.chat import MattermostClient
from mattermail.config import ConfigError, ProfileConfig, ServerConfig
from mattermail.logging import configure_logging, get_logger
from mattermail.publisher import ChatPublisher
from mattermail.supervisor import (
    LOGOUT_TIMEOUT_SECONDS,
    ConnectionSupervisor,
    RetryPolicy,
)
from mattermail.transform import MimeTransformer
from mattermail.watcher import MailboxWatcher


logger = logging.getLogger(__name__)

#: Extra time granted to a stopping thread beyond its logout bound.
_JOIN_GRACE_SECONDS = 2.0


@dataclass
class ProfileBridge:
    """Components of one running profile."""

    name: str
    client: MattermostClient
    publisher: ChatPublisher
    supervisor: ConnectionSupervisor
    thread: threading.Thread | None = None

    def run(self) -> None:
        """Thread body: supervise until stopped, then leave the chat."""
        try:
            self.supervisor.run()
        finally:
            self.publisher.close()


def build_bridge(
    profile: ProfileConfig,
    stop_event: threading.Event,
    *,
    transport: httpx.BaseTransport | None = None,
) -> ProfileBridge:
    """Assemble the components of one profile.

    Args:
        profile: Profile configuration.
        stop_event: Shared event that stops the supervisor.
        transport: HTTP transport override for the chat client.
    """
    log = get_logger("mattermail", profile.name)
    mm = profile.mattermost

    client = MattermostClient(
        mm.server,
        mm.team,
        mm.username,
        mm.password,
        timeout=mm.timeout,
        transport=transport,
        log=log,
    )
    publisher = ChatPublisher(client, log=log)
    transformer = MimeTransformer(mm.channel, profile.message_template, log=log)
    watcher = MailboxWatcher(
        transformer.transform,
        publisher.publish,
        mailbox=profile.imap.mailbox,
        idle_timeout=profile.imap.idle_timeout,
        log=log,
    )
    supervisor = ConnectionSupervisor(
        profile.imap,
        watcher,
        retry_policy=RetryPolicy(
            max_attempts=profile.retry_attempts,
            delay_seconds=profile.retry_delay,
        ),
        stop_event=stop_event,
        log=log,
    )
    return ProfileBridge(
        name=profile.name,
        client=client,
        publisher=publisher,
        supervisor=supervisor,
    )


class MailBridgeService:
    """Runs every configured profile in its own thread."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        self.stop_event = threading.Event()
        self.bridges = {
            name: build_bridge(profile, self.stop_event, transport=transport)
            for name, profile in config.profiles.items()
        }

    def start(self) -> None:
        """Start one daemon thread per profile."""
        for name, bridge in self.bridges.items():
            bridge.thread = threading.Thread(
                target=bridge.run, name=f"profile-{name}", daemon=True
            )
            bridge.thread.start()
            logger.info("Started profile %s", name)

    def wait(self, poll_interval: float = 1.0) -> None:
        """Block until stopped or until every profile thread has exited."""
        while not self.stop_event.wait(poll_interval):
            if not any(
                b.thread is not None and b.thread.is_alive()
                for b in self.bridges.values()
            ):
                logger.warning("All profile threads exited")
                return

    def stop(self) -> None:
        """Ask every supervisor to stop after its current step."""
        self.stop_event.set()

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop all profiles and release their resources.

        Threads blocked in an idle wait cannot be interrupted; they are
        left to die with the process after *timeout*.
        """
        if timeout is None:
            timeout = LOGOUT_TIMEOUT_SECONDS + _JOIN_GRACE_SECONDS
        self.stop()
        for name, bridge in self.bridges.items():
            if bridge.thread is not None:
                bridge.thread.join(timeout)
                if bridge.thread.is_alive():
                    logger.warning(
                        "Profile %s did not stop within %.0fs", name, timeout
                    )
                    continue
            bridge.client.close()
        logger.info("Service stopped")


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns:
        Exit code (0=success, 1=config error, 3=runtime error).
    """
    parser = argparse.ArgumentParser(
        description="MatterMail",
        epilog="Posts new email from IMAP mailboxes to Mattermost channels.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to mattermail.yaml (default: XDG config directory)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    configure_logging(
        level=logging.DEBUG if args.debug else logging.INFO,
        add_secret_filter=True,
    )

    logger.info("MatterMail %s starting...", __version__)

    try:
        config = ServerConfig.from_yaml(args.config)
    except ConfigError as e:
        logger.critical("Configuration error: %s", e)
        return 1

    service = MailBridgeService(config)

    def shutdown_handler(signum: int, frame: object) -> None:
        """Handle shutdown signals."""
        logger.info("Received signal %d, initiating shutdown...", signum)
        service.stop()

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    try:
        service.start()
        service.wait()
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Fatal runtime error: %s", e)
        return 3
    finally:
        service.shutdown()


if __name__ == "__main__":
    sys.exit(main())
