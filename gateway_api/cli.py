"""CLI: ejecuta el gateway sin API HTTP (observer = logs)."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import threading

from common.config import get_settings
from common.db import get_engine

from .config import GatewayConfig
from .core.domain import LoggingObserver
from .gateway import DeviceGateway
from .infrastructure.audit.audit_logger import AuditLogger
from .infrastructure.persistence import SqlDeviceRepository
from .mqtt.config import MQTTConfig
from .telemetry import ThresholdTable

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    p = argparse.ArgumentParser(description="Device command & telemetry gateway (headless)")
    p.add_argument("--broker-host", default=None, help="override MQTT_BROKER_HOST")
    p.add_argument("--broker-port", type=int, default=None, help="override MQTT_BROKER_PORT")
    p.add_argument("--topic-root", default=None, help="override MQTT_TOPIC_ROOT")
    args = p.parse_args()

    engine = get_engine(get_settings())
    repository = SqlDeviceRepository(engine)
    repository.create_schema()

    overrides = {
        "broker_host": args.broker_host,
        "broker_port": args.broker_port,
        "topic_root": args.topic_root,
    }
    mqtt_config = dataclasses.replace(
        MQTTConfig.from_env(), **{k: v for k, v in overrides.items() if v is not None}
    )

    gateway = DeviceGateway(
        repository,
        mqtt_config,
        config=GatewayConfig.from_env(),
        observer=LoggingObserver(),
        audit=AuditLogger(engine),
        thresholds=ThresholdTable.from_env(),
    )

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    gateway.start()
    logger.info("[GATEWAY] Running against %s:%d, Ctrl+C to stop", mqtt_config.broker_host, mqtt_config.broker_port)
    try:
        while not stop.wait(30.0):
            logger.info("[GATEWAY] %s", gateway.stats)
    finally:
        gateway.stop()


if __name__ == "__main__":
    main()
