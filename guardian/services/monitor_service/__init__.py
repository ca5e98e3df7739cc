"""Monitor Service: message intake, classification workers and the engine facade.

Components:
- pipeline.py: MonitoringPipeline, bounded queue with worker threads
- sources.py: Push (queue) and polling message sources
- engine.py: GuardianEngine facade and EngineConfig
- handler.py: Flask HTTP surface, including server-sent alert streams

Usage:
    from guardian.services.monitor_service import GuardianEngine
    engine = GuardianEngine()
    engine.start()
    engine.submit_message(message)
"""

from .engine import EngineConfig, GuardianEngine
from .pipeline import MonitoringPipeline, PipelineBackpressureError, QueuedMessage
from .sources import MessageSource, PollingMessageSource, QueueMessageSource

__all__ = [
    "EngineConfig",
    "GuardianEngine",
    "MonitoringPipeline",
    "PipelineBackpressureError",
    "QueuedMessage",
    "MessageSource",
    "PollingMessageSource",
    "QueueMessageSource",
]
