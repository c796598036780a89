"""
TopicGate Main Application Entry Point

Loads configuration, logging and the database, instantiates the two network
clients named in the configuration and runs the bridge until a shutdown
signal arrives.
"""

import asyncio
import importlib
import signal
import traceback
from typing import Any, Dict, Optional

from src.core.config import ConfigurationManager, ConfigurationError
from src.core.logging import initialize_logging, get_logger
from src.core.database import initialize_database
from src.services.bridge import BridgeService


def load_client(path: str, options: Optional[Dict[str, Any]] = None) -> Any:
    """
    Instantiate a client class from a "package.module:ClassName" path.

    Raises:
        ConfigurationError: If the path is malformed or cannot be imported
    """
    module_name, _, class_name = (path or "").partition(":")
    if not module_name or not class_name:
        raise ConfigurationError(f"Client path must look like 'package.module:ClassName', got {path!r}")

    try:
        module = importlib.import_module(module_name)
        client_class = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load client {path}: {e}")

    return client_class(**(options or {}))


class TopicGateApplication:
    """Main TopicGate application class"""

    def __init__(self, config_dir: str = "config"):
        self.config_dir = config_dir
        self.config_manager: Optional[ConfigurationManager] = None
        self.db_manager = None
        self.bridge: Optional[BridgeService] = None
        self.logger = None

        self.running = False
        self.shutdown_event = asyncio.Event()

    async def initialize(self):
        """Initialize all application components"""
        print("Initializing TopicGate...")

        try:
            self.config_manager = ConfigurationManager(self.config_dir)
            self.config_manager.load_config()

            initialize_logging(self.config_manager.config)
            self.logger = get_logger('main')

            self.logger.info("TopicGate starting up...")
            self.logger.info(f"Version: {self.config_manager.get('app.version', '1.0.0')}")
            self.logger.info(f"Debug mode: {self.config_manager.get('app.debug', False)}")

            await self._initialize_database()
            self._initialize_bridge()

            self.logger.info("Core systems initialized successfully")

        except Exception as e:
            if self.logger:
                self.logger.error(f"Failed to initialize application: {e}", exc_info=True)
            else:
                print(f"Failed to initialize application: {e}")
                traceback.print_exc()
            raise

    async def _initialize_database(self):
        """Initialize database system"""
        self.logger.info("Initializing database...")

        db_path = self.config_manager.get('database.path', 'data/topicgate.db')
        max_connections = self.config_manager.get('database.max_connections', 10)

        self.db_manager = initialize_database(db_path, max_connections)
        self.logger.info(f"Database initialized (schema version {self.db_manager.get_schema_version()})")

    def _initialize_bridge(self):
        """Instantiate the network clients and the bridge service"""
        source_path, source_options = self.config_manager.get_client_spec('source')
        forum_path, forum_options = self.config_manager.get_client_spec('forum')

        try:
            source_client = load_client(source_path, source_options) if source_path else None
            forum_client = load_client(forum_path, forum_options) if forum_path else None
        except ConfigurationError as e:
            # BridgeService.start() refuses to run without both clients
            self.logger.error(f"Client configuration error, bridge stays inactive: {e}")
            source_client = forum_client = None

        self.bridge = BridgeService(
            self.config_manager.get_section('bridge'),
            source_client,
            forum_client,
            database=self.db_manager
        )

    async def start(self):
        """Start the application"""
        await self.initialize()

        self.running = True

        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        try:
            if not await self.bridge.start():
                self.logger.error("Bridge did not start; check the bridge configuration")
                return

            self.logger.info("TopicGate is now running")
            await self._main_loop()

        except Exception as e:
            self.logger.error(f"Application error: {e}", exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def _main_loop(self):
        """Main application event loop"""
        self.logger.info("Entering main application loop")

        reporter = asyncio.create_task(self._stats_reporter_loop())
        try:
            await self.shutdown_event.wait()
            self.logger.info("Shutdown signal received")
        finally:
            reporter.cancel()
            await asyncio.gather(reporter, return_exceptions=True)

    async def _stats_reporter_loop(self):
        """Report bridge statistics periodically"""
        interval = self.config_manager.get('app.status_interval', 300)
        while self.running:
            try:
                await asyncio.sleep(interval)

                status = self.bridge.get_status()
                dispatcher = status.get('dispatcher', {})
                self.logger.info(
                    f"Bridge Stats - "
                    f"Connected: {status['connected']}, "
                    f"Threads: {status['mapping_count']}, "
                    f"Participants: {status['participant_count']}, "
                    f"Relayed: {dispatcher.get('relayed_to_forum', 0)} in, "
                    f"{dispatcher.get('relayed_to_source', 0)} out, "
                    f"Failures: {dispatcher.get('failures', 0)}"
                )

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in stats reporter: {e}")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}")
        self.shutdown_event.set()

    async def shutdown(self):
        """Shutdown the application gracefully"""
        if not self.running:
            return

        self.logger.info("Shutting down TopicGate...")
        self.running = False

        try:
            if self.bridge:
                await self.bridge.stop()

            if self.db_manager:
                self.db_manager.close()

            self.logger.info("TopicGate shutdown complete")

        except Exception as e:
            self.logger.error(f"Error during shutdown: {e}")

    def get_system_status(self) -> Dict[str, Any]:
        """Get comprehensive system status"""
        status = {
            'running': self.running,
            'bridge': {},
            'database': {'connected': self.db_manager is not None}
        }

        if self.bridge:
            status['bridge'] = self.bridge.get_status()

        if self.db_manager:
            status['database'].update(self.db_manager.get_stats())

        return status


async def main():
    """Main entry point"""
    app = TopicGateApplication()
    await app.start()


def run():
    """Console script entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
