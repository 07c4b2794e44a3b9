"""CloudWatch business metrics for billing events.

Fire-and-forget: boto3 is synchronous, so calls are dispatched to a small
thread pool and failures are logged, never raised.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import boto3
import structlog

from fleet_billing.core.config import get_settings

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client(region_name: str):
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=region_name)
    return _cw_client


def _put_business_event(namespace: str, region_name: str, event_name: str, tenant_id: str | None) -> None:
    """Synchronous put_metric_data. Runs in the thread pool."""
    dimensions = [{"Name": "Event", "Value": event_name}]
    if tenant_id:
        dimensions.append({"Name": "TenantId", "Value": tenant_id})
    try:
        _get_client(region_name).put_metric_data(
            Namespace=namespace,
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


async def emit_business_event(event_name: str, tenant_id: str | None = None) -> None:
    """Emit a business event metric. Non-blocking; no-op when metrics are disabled."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    loop = asyncio.get_running_loop()
    loop.run_in_executor(
        _executor,
        _put_business_event,
        settings.metrics_namespace,
        settings.aws_region,
        event_name,
        tenant_id,
    )
