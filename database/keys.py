"""
Key namespacing shared by every backend.

  queue:<tier>:<tenant>                         list
  dup:<tenant>:<recipient>:<hash>               duplicate record, TTL = duplicate window
  dupcap:<tenant>:<recipient>:<type>:<date>     daily-cap counter, expires at local midnight
  ratecap:<tenant>:<window>:<date-or-hour>      hourly/daily send counter
  spacing:<tenant>                              last successful send timestamp
  status:<message_id>                           status record, TTL ~7 days
"""
from __future__ import annotations

from models.schemas import QueueTier


def queue_key(tenant_id: str, tier: QueueTier) -> str:
    return f"queue:{QueueTier(tier).value}:{tenant_id}"


def duplicate_key(tenant_id: str, recipient: str, content_hash: str) -> str:
    return f"dup:{tenant_id}:{recipient}:{content_hash}"


def daily_cap_key(tenant_id: str, recipient: str, message_type: str, day: str) -> str:
    return f"dupcap:{tenant_id}:{recipient}:{message_type}:{day}"


def rate_key(tenant_id: str, window: str, bucket: str) -> str:
    return f"ratecap:{tenant_id}:{window}:{bucket}"


def spacing_key(tenant_id: str) -> str:
    return f"spacing:{tenant_id}"


def status_key(message_id: str) -> str:
    return f"status:{message_id}"
