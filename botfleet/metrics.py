# FilePath: "/botfleet/metrics.py"
# Project: BotFleet
# Description: Prometheus metrics for sessions and message handling.
# Author: "Michael Landbo"
# Date created: "19/10/2026"
# Version: "v.1.0.0"

from prometheus_client import Counter, Gauge, Histogram

SESSIONS_GAUGE = Gauge("botfleet_sessions", "Sessions tracked by the fleet manager", ["state"])
MESSAGES_COUNTER = Counter("botfleet_messages_total", "Inbound messages handled", ["bot_id", "outcome"])
COMPLETION_SECONDS = Histogram("botfleet_completion_seconds", "Completion call latency", ["bot_id"])
