import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os

# Libraries that log every request or file event at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "watchdog", "aiosqlite", "websockets")


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "tool-gateway"
) -> None:
    """Configure stdlib logging and structlog for the gateway or a worker process"""

    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Fill in the timestamp and drop unset turn identifiers"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    for key in ("agent_id", "session_id"):
        if key in event_dict and event_dict[key] is None:
            del event_dict[key]

    return event_dict


def bind_turn_context(agent_id: Optional[str], session_id: Optional[str]):
    """Attach agent and session ids to every log line emitted inside the block"""

    return structlog.contextvars.bound_contextvars(agent_id=agent_id, session_id=session_id)


class AgentLogger:
    """Specialized logger for agent operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_agent_event(
        self,
        event_type: str,
        agent_id: str,
        session_id: Optional[str],
        data: Optional[Any] = None,
        **kwargs
    ):
        """Log agent-specific events (requests, responses, heartbeats)"""

        self.logger.info(
            "agent_event",
            event_type=event_type,
            agent_id=agent_id,
            session_id=session_id,
            data=data,
            **kwargs
        )

    def log_tool_execution(
        self,
        tool_name: str,
        agent_id: Optional[str],
        session_id: Optional[str],
        input_data: Dict[str, Any],
        output_data: Optional[Any] = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        log = self.logger.info if success else self.logger.error
        log(
            "tool_execution",
            tool_name=tool_name,
            agent_id=agent_id,
            session_id=session_id,
            input_data=input_data,
            output_data=output_data,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_loop_transition(
        self,
        session_id: Optional[str],
        from_state: str,
        to_state: str,
        iteration: int,
        tool_calls: Optional[int] = None
    ):
        """Log orchestration loop state transitions"""

        self.logger.debug(
            "loop_transition",
            session_id=session_id,
            from_state=from_state,
            to_state=to_state,
            iteration=iteration,
            tool_calls=tool_calls
        )

    def log_usage(
        self,
        agent_id: Optional[str],
        session_id: Optional[str],
        usage: Dict[str, Any],
        message: str = "Token usage report"
    ):
        """Log token usage reported by the upstream provider"""

        self.logger.info(
            "usage",
            agent_id=agent_id,
            session_id=session_id,
            message=message,
            usage=usage
        )


# Global logger instance
agent_logger = AgentLogger("gateway")


class MetricsCollector:
    """Collect and export metrics"""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = f"latency.{operation}"
        if key not in self.metrics:
            self.metrics[key] = {
                "count": 0,
                "sum": 0.0,
                "min": float('inf'),
                "max": 0.0
            }

        entry = self.metrics[key]
        entry["count"] += 1
        entry["sum"] += duration_ms
        entry["min"] = min(entry["min"], duration_ms)
        entry["max"] = max(entry["max"], duration_ms)

        agent_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        self.metrics[name] = self.metrics.get(name, 0) + value

        agent_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict) and "count" in value:
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float('inf') else 0,
                    "max": value["max"]
                }
            else:
                summary[key] = value

        return summary

    def reset(self):
        self.metrics.clear()


# Global metrics collector
metrics = MetricsCollector()
