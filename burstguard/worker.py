"""
Sweep worker process.

Periodically escalates muted bursts whose mute window elapsed without any
further events. Multiple worker instances may run against the same ledger:
the ledger's atomic escalation flag guarantees one summary per burst.
Implements graceful shutdown on SIGTERM/SIGINT.
"""

import asyncio
import signal
import sys
from typing import Optional

from burstguard.config import settings
from burstguard.services.engine import DecisionEngine, create_engine
from burstguard.utils.logging import setup_logging, get_logger
from burstguard.utils.metrics import emit_metric
from burstguard.utils.resilience import retry_with_backoff

logger = get_logger(__name__)


class SweepWorker:
    """Worker process that runs the periodic escalation sweep."""

    def __init__(
        self,
        engine: Optional[DecisionEngine] = None,
        interval_seconds: Optional[float] = None
    ):
        """
        Initialize the worker.

        Args:
            engine: Engine to sweep with (built from settings when None)
            interval_seconds: Pause between sweep passes
        """
        self.engine = engine or create_engine(settings)
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else settings.sweep_interval_seconds
        )
        self.running = False
        self.passes = 0
        self._stopped = False
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """
        Start the worker process.

        Initializes the ledger and begins the sweep loop.
        """
        logger.info("Starting sweep worker...")

        try:
            await self._initialize_ledger()
            logger.info("Ledger connection initialized")

            self.running = True
            self._register_signal_handlers()

            logger.info("Sweep worker started successfully")

            await self._run_loop()

        except Exception as e:
            logger.error(f"Failed to start sweep worker: {e}", exc_info=True)
            raise

    @retry_with_backoff(max_retries=5, base_delay=1.0, max_delay=10.0)
    async def _initialize_ledger(self) -> None:
        await self.engine.ledger.initialize()

    async def stop(self) -> None:
        """
        Stop the worker process gracefully.

        Closes the ledger and the delivery channel.
        """
        if self._stopped:
            return
        self._stopped = True

        logger.info("Stopping sweep worker...")

        self.running = False
        self._shutdown_event.set()

        await self.engine.ledger.close()
        if self.engine.notifier is not None:
            await self.engine.notifier.close()

        logger.info("Sweep worker stopped")

    async def run_once(self) -> int:
        """
        Run one sweep pass.

        Returns:
            Number of escalations committed
        """
        tasks = await self.engine.sweep()
        self.passes += 1
        emit_metric("sweep.escalations", len(tasks), pass_number=self.passes)
        return len(tasks)

    async def _run_loop(self) -> None:
        """
        Main sweep loop.

        Runs a pass, then waits for the interval or a shutdown signal.
        """
        logger.info("Starting sweep loop...")

        while self.running:
            try:
                await self.run_once()

            except asyncio.CancelledError:
                logger.info("Sweep loop cancelled")
                break

            except Exception as e:
                logger.error(f"Error during sweep pass: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("Sweep loop stopped")

    def _register_signal_handlers(self) -> None:
        """Register signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            """Handle shutdown signals."""
            signal_name = signal.Signals(signum).name
            logger.info(f"Received signal {signal_name}, initiating graceful shutdown...")
            self.running = False
            self._shutdown_event.set()

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

        logger.info("Signal handlers registered (SIGTERM, SIGINT)")


async def main():
    """Main entry point for the sweep worker."""
    setup_logging(settings.log_level.upper())
    logger.info("Sweep worker starting...")

    worker = SweepWorker()

    try:
        await worker.start()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Sweep worker failed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await worker.stop()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
