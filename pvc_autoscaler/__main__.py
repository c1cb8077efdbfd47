"""Command line entry point: `python -m pvc_autoscaler` or `pvc-autoscaler`."""

import argparse
import signal
import sys

from pvc_autoscaler.autoscaler_logger import AutoscalerLogger
from pvc_autoscaler.config import AutoscalerConfig, resolve_config
from pvc_autoscaler.controller import PVCAutoscaler
from pvc_autoscaler.errors import ConfigError
from pvc_autoscaler.kube_client import create_kube_client
from pvc_autoscaler.metrics_client import metrics_client_factory


def build_parser() -> argparse.ArgumentParser:
    defaults = AutoscalerConfig()
    p = argparse.ArgumentParser(
        prog="pvc-autoscaler",
        description="Grow PersistentVolumeClaims that opt in via annotations when they fill up.",
    )
    p.add_argument("--config", help="YAML configuration file")
    p.add_argument(
        "--metrics-client",
        help=f"metrics client used to query volume stats (default {defaults.metrics_client})",
    )
    p.add_argument("--metrics-client-url", help="metrics client URL")
    p.add_argument(
        "--polling-interval",
        help=f"how often to check volume stats, e.g. 30s (default {defaults.polling_interval:g}s)",
    )
    p.add_argument(
        "--reconcile-timeout",
        help=f"time after which a cycle is abandoned (default {defaults.reconcile_timeout:g}s)",
    )
    p.add_argument(
        "--retry-after",
        help=f"delay before retrying a failed resize (default {defaults.retry_after:g}s)",
    )
    p.add_argument("--max-workers", type=int, help="concurrent resize workers")
    p.add_argument("--log-level", help=f"log level (default {defaults.log_level})")
    p.add_argument("--log-file", help="also write logs to this file")
    p.add_argument("--kubeconfig", help="kubeconfig path, in-cluster config if unset")
    return p


def main(argv: list[str] | None = None) -> int:
    args = vars(build_parser().parse_args(argv))
    configfile = args.pop("config")
    try:
        config = resolve_config(configfile, args)
    except ConfigError as e:
        sys.stderr.write(f"invalid configuration: {e}\n")
        return 1

    logger = AutoscalerLogger("main", config.log_level, config.log_file).logger

    try:
        kube = create_kube_client(config.kubeconfig)
    except Exception as e:
        logger.critical(f"an error occurred while creating the Kubernetes client: {e}")
        return 1

    try:
        metrics = metrics_client_factory(config.metrics_client, config.metrics_client_url)
    except ConfigError as e:
        logger.critical(f"metrics client error: {e}")
        return 1
    logger.info(
        f"metrics client ({config.metrics_client}) ready at address {config.metrics_client_url}"
    )
    logger.warning(
        "annotations are updated optimistically: a concurrent edit of the same "
        "PersistentVolumeClaim by another client can be lost"
    )

    autoscaler = PVCAutoscaler(kube, metrics, config)

    def shutdown(signum, frame):
        logger.info(f"received signal {signum}")
        autoscaler.stop()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        autoscaler.start()
    except Exception as e:
        logger.critical(f"failed to start: {e}")
        autoscaler.stop()
        return 1

    while not autoscaler.wait(timeout=1.0):
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
