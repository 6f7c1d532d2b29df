"""
Delivery pipeline — per-tenant queues drained by human-paced workers.

- DeliveryPipeline accepts messages (duplicate guard, rate gate) and owns
  the worker registry
- DeliveryWorker drains one tenant, priority tier first
- PeriodicTask stands in for the external scheduler inside the API process
"""
from job_queue.periodic import PeriodicTask
from job_queue.pipeline import DeliveryPipeline
from job_queue.status import StatusBook
from job_queue.worker import DeliveryWorker, TenantState

__all__ = ["DeliveryPipeline", "DeliveryWorker", "PeriodicTask", "StatusBook", "TenantState"]
