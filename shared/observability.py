"""
Observability module for the Accounts Ledger.
Integrates logging, metrics, and tracing.
"""

from typing import Optional

from .logging import configure_logging, get_logger, set_request_id, set_account_context
from .metrics import MetricsCollector, get_metrics_collector
from .tracing import configure_tracing, add_span_attributes, add_span_event


class ObservabilityManager:
    """Centralized observability manager for services."""

    def __init__(self, service_name: str, log_level: str = "info",
                 otel_exporter: Optional[str] = None, enable_console: bool = False,
                 enable_tracing: bool = False, metrics: Optional[MetricsCollector] = None):
        self.service_name = service_name
        self.log_level = log_level
        self.otel_exporter = otel_exporter
        self.enable_console = enable_console

        configure_logging(service_name, log_level)
        if enable_tracing:
            configure_tracing(service_name, otel_exporter, enable_console)
        self.metrics = metrics or get_metrics_collector(service_name)

        self.logger = get_logger(f"{service_name}.observability")

        self.logger.info("Observability initialized",
                         service=service_name,
                         log_level=log_level,
                         tracing_enabled=enable_tracing)

    def trace_request(self, request_id: Optional[str] = None,
                      account_id: Optional[str] = None):
        """Set up request context for tracing."""
        if request_id:
            set_request_id(request_id)
        if account_id:
            set_account_context(account_id)

        add_span_attributes(request_id=request_id, account_id=account_id)

    def log_business_event(self, event_type: str, **kwargs):
        """Log business event with full context."""
        self.logger.info(
            "Business event",
            event_type=event_type,
            **kwargs
        )
        self.metrics.record_business_event(event_type)
        add_span_event("business_event", event_type=event_type, **kwargs)


def get_observability_manager(service_name: str, **kwargs) -> ObservabilityManager:
    """Get an observability manager for a service."""
    return ObservabilityManager(service_name, **kwargs)
