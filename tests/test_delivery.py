from __future__ import annotations

import logging

from windwatch.services.delivery import ALERT_TEMPLATE, LoggingDeliveryClient


def test_logging_client_keeps_links_out_of_the_log(caplog):
    variables = {
        "device_id": "HT-ANEM-001",
        "alert_level": "RED",
        "links": {"snooze_1h": "https://alerts.example.test/ack/secret-token-1?action=snooze_1h"},
        "unsubscribe_url": "https://alerts.example.test/unsubscribe/secret-key",
    }

    with caplog.at_level(logging.INFO, logger="windwatch.delivery"):
        result = LoggingDeliveryClient().send("ops@example.test", ALERT_TEMPLATE, variables)

    assert result.ok
    logged = " ".join(record.getMessage() for record in caplog.records)
    assert "delivery_logged" in logged
    assert "HT-ANEM-001" in logged
    assert "snooze_1h" in logged
    assert "secret-token-1" not in logged
    assert "secret-key" not in logged
    assert "ops@example.test" not in logged
