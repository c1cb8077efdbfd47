"""Volume usage samples from the metrics backend."""

from typing import Any, Protocol

import requests

from pvc_autoscaler.autoscaler_logger import get_logger
from pvc_autoscaler.errors import ConfigError, MetricsClientError
from pvc_autoscaler.models import Identity, UsageSample

USED_BYTES_QUERY = "kubelet_volume_stats_used_bytes"
CAPACITY_BYTES_QUERY = "kubelet_volume_stats_capacity_bytes"

logger = get_logger("metrics")


class MetricsClient(Protocol):
    def fetch_usage_samples(
        self, timeout: float | None = None
    ) -> dict[Identity, UsageSample]: ...


class PrometheusClient:
    def __init__(self, url: str, session: requests.Session | None = None):
        self.url = url.rstrip("/")
        self.session = session or requests.Session()

    def query(self, promql: str, timeout: float | None = None) -> dict[str, Any]:
        try:
            r = self.session.get(
                f"{self.url}/api/v1/query",
                params={"query": promql},
                timeout=timeout,
            )
            r.raise_for_status()
            body = r.json()
        except requests.RequestException as e:
            raise MetricsClientError(f"query {promql!r} failed: {e}") from e
        except ValueError as e:
            raise MetricsClientError(f"query {promql!r} returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise MetricsClientError(f"unexpected response for {promql!r}")
        if body.get("status") != "success":
            raise MetricsClientError(
                f"error {body.get('errorType')} in the query: {body.get('error')}"
            )
        for warning in body.get("warnings") or []:
            logger.warning(f"Prometheus warning for {promql!r}: {warning}")
        return body.get("data") or {}

    def get_metric_values(
        self, promql: str, timeout: float | None = None
    ) -> dict[Identity, int]:
        data = self.query(promql, timeout)
        result_type = data.get("resultType")
        if result_type != "vector":
            raise MetricsClientError(f"unknown response type: {result_type}")

        values: dict[Identity, int] = {}
        for serie in data.get("result", []):
            labels = serie.get("metric", {})
            namespace = labels.get("namespace")
            name = labels.get("persistentvolumeclaim")
            if not namespace or not name:
                continue
            try:
                _, raw = serie["value"]
                values[Identity(namespace, name)] = int(float(raw))
            except (KeyError, TypeError, ValueError, OverflowError) as e:
                logger.debug(f"skipping sample for {namespace}/{name}: {e}")
        return values

    def fetch_usage_samples(
        self, timeout: float | None = None
    ) -> dict[Identity, UsageSample]:
        used = self.get_metric_values(USED_BYTES_QUERY, timeout)
        capacity = self.get_metric_values(CAPACITY_BYTES_QUERY, timeout)

        samples: dict[Identity, UsageSample] = {}
        for identity, used_bytes in used.items():
            if identity not in capacity:
                continue
            samples[identity] = UsageSample(
                used_bytes=used_bytes, capacity_bytes=capacity[identity]
            )
        return samples


def metrics_client_factory(name: str, url: str) -> MetricsClient:
    if name != "prometheus":
        raise ConfigError(f"unknown metrics client: {name}")
    if not url:
        raise ConfigError(f"no URL configured for the {name} metrics client")
    return PrometheusClient(url)
