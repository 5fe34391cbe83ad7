"""Delivery collaborator interface. Transport lives outside this service."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

logger = logging.getLogger("windwatch.delivery")

ALERT_TEMPLATE = "wind_alert"


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    error: str | None = None


class DeliveryClient(Protocol):
    def send(self, recipient: str, template: str, variables: Mapping[str, Any]) -> DeliveryResult:
        ...


# Variables carrying live single-use links; never written to the log.
SECRET_VARIABLES = ("links", "unsubscribe_url")


class LoggingDeliveryClient:
    """Writes each message to the log and reports success."""

    def send(self, recipient: str, template: str, variables: Mapping[str, Any]) -> DeliveryResult:
        visible = {key: value for key, value in variables.items() if key not in SECRET_VARIABLES}
        logger.info(
            json.dumps(
                {
                    "event": "delivery_logged",
                    "recipient_domain": recipient.rpartition("@")[2],
                    "template": template,
                    "variables": visible,
                    "actions": sorted(variables.get("links") or {}),
                },
                default=str,
            )
        )
        return DeliveryResult(ok=True)
