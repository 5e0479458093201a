"""CloudWatch custom metrics for billing business events.

Emission is fire-and-forget: failures are logged as warnings via structlog and
never raised to the caller. boto3 is synchronous, so calls are dispatched to a
small ThreadPoolExecutor to keep the event loop free.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any

import boto3
import structlog

from billing_recon.core.config import Settings

logger = structlog.get_logger(__name__)


class BusinessMetrics:
    """Counts billing events (plan changes, activations, duplicates) in CloudWatch.

    Built once at startup; a metrics object without a client is a no-op.
    """

    def __init__(self, client: Any | None, namespace: str):
        self.client = client
        self.namespace = namespace
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics") if client else None

    @classmethod
    def from_settings(cls, settings: Settings) -> "BusinessMetrics":
        if not settings.cloudwatch_enabled:
            return cls(client=None, namespace=settings.cloudwatch_namespace)
        client = boto3.client("cloudwatch", region_name=settings.aws_region)
        return cls(client=client, namespace=settings.cloudwatch_namespace)

    def _put_business_event(self, event_name: str, user_id: str | None = None) -> None:
        """Synchronous put_metric_data. Runs in thread pool."""
        dimensions = [{"Name": "Event", "Value": event_name}]
        if user_id:
            dimensions.append({"Name": "UserId", "Value": user_id})
        try:
            self.client.put_metric_data(
                Namespace=self.namespace,
                MetricData=[{
                    "MetricName": "EventCount",
                    "Dimensions": dimensions,
                    "Value": 1.0,
                    "Unit": "Count",
                    "Timestamp": datetime.now(UTC),
                }],
            )
        except Exception as e:
            logger.warning("business_event_emit_failed", error=str(e), event_name=event_name)

    async def emit(self, event_name: str, user_id: str | None = None) -> None:
        """Emit business event metric. Non-blocking, fire-and-forget."""
        if self.client is None:
            return
        loop = asyncio.get_running_loop()
        loop.run_in_executor(self._executor, self._put_business_event, event_name, user_id)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
