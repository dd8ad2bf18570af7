"""
Per-user broker topology for the Connection Service.

Each connecting user gets a broker account named after the user id, a queue
the dispatcher writes to, a queue the client writes results to, and
permissions that confine the account to exactly those two queues. Setup is
declarative, so repeating it converges on the same state.
"""

import re
from typing import Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..adapters.broker_admin import BrokerAdminClient, BrokerAdminError

DISPATCHER_QUEUE_TEMPLATE = "{user_id}_dispatcher_queue"
OUTPUTS_QUEUE_TEMPLATE = "{user_id}_outputs_cal_queue"
INPUTS_QUEUE_TEMPLATE = "{user_id}_inputs_cal_queue"
SHOVEL_TEMPLATE = "{user_id}_outputs_shovel"


def dispatcher_queue_name(user_id: str) -> str:
    """Queue the dispatcher fills and the client consumes."""
    return DISPATCHER_QUEUE_TEMPLATE.format(user_id=user_id)


def outputs_queue_name(user_id: str) -> str:
    """Queue the client publishes calibration outputs to."""
    return OUTPUTS_QUEUE_TEMPLATE.format(user_id=user_id)


def inputs_queue_name(user_id: str) -> str:
    """Legacy dispatcher-to-calibration queue, declared downstream."""
    return INPUTS_QUEUE_TEMPLATE.format(user_id=user_id)


def shovel_name(user_id: str) -> str:
    return SHOVEL_TEMPLATE.format(user_id=user_id)


class TopologyError(Exception):
    """A topology step failed for a user."""

    def __init__(self, step: str, user_id: str, cause: Optional[BaseException] = None):
        self.step = step
        self.user_id = user_id
        self.cause = cause
        message = f"failed to {step} for user {user_id}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class TopologyProvisioner:
    """Creates and removes a user's broker account, queues and permissions."""

    def __init__(self, admin: BrokerAdminClient, vhost: str = "/",
                 dispatcher_exchange: Optional[str] = None,
                 shovel_destination_uri: Optional[str] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.admin = admin
        self.vhost = vhost
        self.dispatcher_exchange = dispatcher_exchange
        self.shovel_destination_uri = shovel_destination_uri
        self.metrics = metrics
        self.logger = get_logger("connection.topology.provisioner")

    async def set_up_topology_for(self, user_id: str, password: str) -> None:
        """Provision the user's account, queues, permissions and optional routing."""
        dispatcher_queue = dispatcher_queue_name(user_id)
        outputs_queue = outputs_queue_name(user_id)

        self.logger.info(
            "Setting up broker topology",
            user_id=user_id,
            vhost=self.vhost,
            dispatcher_queue=dispatcher_queue,
            outputs_queue=outputs_queue
        )

        try:
            await self._step("create user", user_id,
                             self.admin.create_user(user_id, password))
            await self._step("declare dispatcher queue", user_id,
                             self.admin.declare_queue(self.vhost, dispatcher_queue))
            await self._step("declare outputs queue", user_id,
                             self.admin.declare_queue(self.vhost, outputs_queue))
            await self._step("set permissions", user_id,
                             self.admin.set_permissions(
                                 self.vhost,
                                 user_id,
                                 configure="",
                                 write=f"^({re.escape(outputs_queue)}|amq\\.default)$",
                                 read=f"^{re.escape(dispatcher_queue)}$",
                             ))

            if self.dispatcher_exchange:
                await self._step("declare dispatcher exchange", user_id,
                                 self.admin.declare_exchange(
                                     self.vhost, self.dispatcher_exchange, "direct"))
                await self._step("bind dispatcher queue", user_id,
                                 self.admin.bind_queue(
                                     self.vhost, self.dispatcher_exchange,
                                     dispatcher_queue, routing_key=user_id))

            if self.shovel_destination_uri:
                await self._step("create outputs shovel", user_id,
                                 self.admin.create_shovel(
                                     self.vhost,
                                     shovel_name(user_id),
                                     src_queue=outputs_queue,
                                     dest_uri=self.shovel_destination_uri,
                                     dest_queue=outputs_queue,
                                 ))
        except TopologyError:
            self._record("setup", "error")
            raise

        self._record("setup", "success")
        self.logger.info("Broker topology ready", user_id=user_id)

    async def delete_topology_for(self, user_id: str) -> None:
        """Remove everything setup created.

        Queue and shovel removal is best-effort. Failing to delete the
        account raises ``TopologyError``.
        """
        self.logger.info("Deleting broker topology", user_id=user_id)

        if self.shovel_destination_uri:
            await self._best_effort(
                "delete outputs shovel", user_id,
                self.admin.delete_shovel(self.vhost, shovel_name(user_id)))

        for queue in (dispatcher_queue_name(user_id),
                      outputs_queue_name(user_id),
                      inputs_queue_name(user_id)):
            await self._best_effort(
                "delete queue", user_id,
                self.admin.delete_queue(self.vhost, queue),
                queue=queue)

        try:
            await self._step("delete user", user_id, self.admin.delete_user(user_id))
        except TopologyError:
            self._record("teardown", "error")
            raise

        self._record("teardown", "success")
        self.logger.info("Broker topology deleted", user_id=user_id)

    async def _step(self, step: str, user_id: str, call) -> None:
        try:
            await call
        except BrokerAdminError as e:
            self.logger.error(
                "Broker topology step failed",
                step=step,
                user_id=user_id,
                status_code=e.status_code,
                error=e.detail
            )
            raise TopologyError(step, user_id, e)

    async def _best_effort(self, step: str, user_id: str, call, **log_fields) -> None:
        try:
            await call
        except BrokerAdminError as e:
            self.logger.error(
                "Broker topology cleanup step failed",
                step=step,
                user_id=user_id,
                status_code=e.status_code,
                error=e.detail,
                **log_fields
            )

    def _record(self, operation: str, result: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(
                "topology_operations_total", operation=operation, result=result)
