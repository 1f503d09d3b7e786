"""chatpipe entry point: wires bus, channels and the agent runtime."""

import asyncio
import os
import signal
import sys
from pathlib import Path

from loguru import logger

from chatpipe.agent.runtime import AgentRuntime, LocalClient, ModelClient
from chatpipe.bus.queue import MessageBus
from chatpipe.channels.manager import ChannelManager
from chatpipe.config import Config, load_config
from chatpipe.storage.sessions import SessionStore
from chatpipe.storage.transcript import TranscriptLogger
from chatpipe.tools.sandbox import create_sandbox_tools
from chatpipe.utils.logger import setup_logging

CONFIG_ENV = "CHATPIPE_CONFIG_PATH"


class ChatPipe:
    """Main application: owns the bus, the channel adapters and the runtime."""

    def __init__(self, config: Config, client: ModelClient | None = None):
        self.config = config
        self.bus = MessageBus()
        self.channels = ChannelManager(self.bus)
        self.channels.init_from_config(config)

        workspace = config.workspace_path()
        workspace.mkdir(parents=True, exist_ok=True)
        self.sessions = SessionStore(config.session_store_file())
        self.tools = create_sandbox_tools(config.tools.exec)
        self.client = client or LocalClient(self.tools, self.sessions)
        self.transcript = TranscriptLogger(
            enabled=config.transcript_log.enabled,
            path=config.transcript_log_file(),
            max_bytes=config.transcript_log.max_bytes,
            max_files=config.transcript_log.max_files,
        )
        self.runtime = AgentRuntime(
            bus=self.bus,
            channels=self.channels,
            client=self.client,
            workspace=workspace,
            sessions=self.sessions,
            transcript=self.transcript,
        )
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        logger.info("chatpipe starting...")
        self._tasks.append(asyncio.create_task(self.runtime.run()))
        self._tasks.extend(self.channels.start_all())
        logger.info(f"chatpipe running with {len(self.channels.channels)} channel(s)")

        try:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        logger.info("chatpipe stopping...")
        await self.channels.stop_all()
        self.bus.stop()
        self.client.close_all()
        logger.info("chatpipe stopped")


def _print_usage() -> None:
    print("Usage: chatpipe run [config.yaml]")
    print(f"  Config path defaults to ${CONFIG_ENV} or ./config.yaml")


def main():
    """CLI entry point."""
    args = sys.argv[1:]
    if not args or args[0] in {"-h", "--help", "help"} or args[0] != "run":
        _print_usage()
        return

    config_path = args[1] if len(args) > 1 else os.environ.get(CONFIG_ENV, "config.yaml")
    config = load_config(Path(config_path))
    setup_logging(os.environ.get("CHATPIPE_LOG_LEVEL", "INFO"))

    app = ChatPipe(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def shutdown():
        logger.info("Shutdown signal received")
        loop.create_task(app.stop())

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        loop.run_until_complete(app.stop())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
