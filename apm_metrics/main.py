"""Main entry point for the APM metrics pipeline."""
import argparse
import logging
import signal
import sys

from prometheus_client import CollectorRegistry

from apm_metrics.config import Config, load_config
from apm_metrics.control_api import ControlAPI
from apm_metrics.otel_exporter import OTELExporter, OTELSelfMetrics
from apm_metrics.prom_exporter import start_metrics_server


def setup_logging(log_level: str, log_format: str):
    """Setup logging configuration."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    # json and text share the structured layout
    fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Reduce noise from some libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def main():
    """Main function."""
    parser = argparse.ArgumentParser(
        description="APM Metrics Pipeline - normalize, aggregate and filter service metrics"
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to configuration YAML file (defaults apply when omitted)"
    )

    args = parser.parse_args()

    # Load configuration
    try:
        config = load_config(args.config) if args.config else Config()
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config.global_.log_level, config.global_.log_format)
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("APM Metrics Pipeline")
    logger.info("=" * 60)
    logger.info(f"Configuration loaded from: {args.config or '<defaults>'}")
    logger.info(f"Query source: {config.source.url}")
    logger.info(f"Entity kinds with queries: {[k.value for k in config.aggregation.queries]}")

    # Self-metrics exporters
    try:
        self_metrics = start_metrics_server(config.exporters.prometheus, CollectorRegistry())
    except Exception as e:
        logger.error(f"Failed to start Prometheus exporter: {e}", exc_info=True)
        sys.exit(1)

    otel_exporter = OTELExporter(config.exporters.otel)
    otel_self_metrics = None
    if otel_exporter.meter is not None:
        otel_self_metrics = OTELSelfMetrics(otel_exporter.meter, config.exporters.otel.prefix)

    control_api = ControlAPI(
        config,
        self_metrics=self_metrics,
        otel_self_metrics=otel_self_metrics,
    )

    # Setup signal handlers
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        otel_exporter.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # Run control API (blocking)
    logger.info(f"Starting control API on port {config.global_.control_api_port}")
    try:
        control_api.run(
            host=config.global_.bind_address,
            port=config.global_.control_api_port
        )
    except Exception as e:
        logger.error(f"Control API error: {e}", exc_info=True)
        otel_exporter.shutdown()
        sys.exit(1)


if __name__ == "__main__":
    main()
