"""Process runtime for the PostgreSQL change-event dispatcher."""

from __future__ import annotations

import logging
from typing import List, Optional

from .cdc import ChangeEventPipeline, build_pipeline
from .config import Settings, load_settings
from .dispatch import (
    FanoutDispatcher,
    HttpEventDispatcher,
    LoggingDispatcher,
    RetryPolicy,
)
from .entities import EventModelsGroup
from .errors import ChangeEventError, ChildExited, ProtocolViolation

logger = logging.getLogger(__name__)


class ServiceRuntime:
    """Coordinates the capture pipeline and the configured dispatchers."""

    def __init__(
        self,
        settings: Settings,
        *,
        pipeline: Optional[ChangeEventPipeline] = None,
    ) -> None:
        self.settings = settings
        self._http_dispatcher: Optional[HttpEventDispatcher] = None
        if pipeline is None:
            pipeline = build_pipeline(settings, dispatcher=self._build_dispatcher())
        self.pipeline = pipeline

    def _build_dispatcher(self) -> FanoutDispatcher:
        dispatchers: List[object] = [
            LoggingDispatcher(
                jsonl_path=self.settings.jsonl_path
                if self.settings.write_jsonl
                else None
            )
        ]
        if self.settings.dispatch_url:
            self._http_dispatcher = HttpEventDispatcher(
                self.settings.dispatch_url,
                timeout_seconds=self.settings.dispatch_timeout_seconds,
                retry_policy=RetryPolicy(
                    retries=self.settings.dispatch_retry_attempts,
                    base_delay=self.settings.dispatch_retry_base_delay_seconds,
                    max_delay=self.settings.dispatch_retry_max_delay_seconds,
                ),
                dead_letter_handler=self._handle_dead_letter,
            )
            dispatchers.append(self._http_dispatcher)
        return FanoutDispatcher(dispatchers)

    def run(self) -> int:
        """Run until the capture process stops; returns the process exit status."""
        try:
            self.pipeline.run()
        except KeyboardInterrupt:
            logger.info("shutdown requested (KeyboardInterrupt)")
            return 0
        except (ChildExited, ProtocolViolation):
            # logged where it was detected
            return 1
        except ChangeEventError as exc:
            logger.critical("change-event pipeline failed: %s", exc)
            return 1
        except Exception as exc:  # noqa: BLE001 - last resort before exiting
            logger.critical("change-event pipeline crashed: %s", exc, exc_info=True)
            return 1
        finally:
            self.stop()
        return 0

    def stop(self) -> None:
        self.pipeline.stop()
        if self._http_dispatcher is not None:
            try:
                self._http_dispatcher.close()
            except Exception:  # noqa: BLE001 - best effort
                logger.exception("failed to close HTTP dispatcher cleanly")
            self._http_dispatcher = None

    def _handle_dead_letter(self, group: EventModelsGroup, error: Exception) -> None:
        logger.error(
            "dead-lettered %d %s event(s) for %s: %s",
            len(group),
            group.operation.label,
            group.entity_kind,
            error,
        )


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    settings = load_settings()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, settings.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    try:
        runtime = ServiceRuntime(settings)
    except ChangeEventError as exc:
        logger.critical("unable to start change-event pipeline: %s", exc)
        raise SystemExit(1) from exc
    status = runtime.run()
    if status:
        raise SystemExit(status)
