import asyncio

import httpx

from .actions import Action
from .channels import channel_factory
from .config import check_ip_port
from .errors import (
    ActionError, BudgetExceededError, CanaryError, LoadBalancerError, PreconditionError, RetryExhausted
)
from .logger import get_logger
from .models import Backend, EndState, PoolStatus, Timeouts, WorkflowStatus


class Workflow:
    """Rolls a new binary out to every backend in the config.

    The first canary_num backends are upgraded one at a time and any failure
    there stops everything. The rest run concurrency at a time until more
    than max_failures of them have failed.
    """

    def __init__(self, config, lb, channels=None, http_client=None, timeouts=None):
        self.config = config
        self.lb = lb
        self.timeouts = timeouts if timeouts else Timeouts()
        self.logger = get_logger("engine")
        # Reject bad addresses before opening a client nobody would close
        for endpoint in config.backends:
            check_ip_port(endpoint)
        self._owns_http = http_client is None
        self.http = http_client if http_client else httpx.AsyncClient(timeout=5.0)

        self.failures = 0
        self.end_state = EndState.UNKNOWN
        self.actions = self._build_actions(channels if channels else channel_factory(config))

    def _build_actions(self, channels):
        """One Action per backend, in config order"""
        actions = []
        for endpoint in self.config.backends:
            actions.append(Action(endpoint, self.config, self.lb, channels, self.http, self.timeouts))
        return actions

    async def aclose(self):
        if self._owns_http:
            await self.http.aclose()

    def status(self):
        """Current end state plus every Action holding an error"""
        return WorkflowStatus(
            end_state=self.end_state,
            failures=[a for a in self.actions if a.err is not None],
        )

    async def run(self):
        """Run the precondition check, the canaries and then the bulk rollout"""
        if self.end_state is not EndState.UNKNOWN:
            error_msg = f"workflow already ran, ended in {self.end_state.value}"
            self.logger.error(error_msg)
            raise RuntimeError(error_msg)

        try:
            await asyncio.wait_for(self._check_lb_state(), timeout=self.timeouts.precondition_s)
        except (PreconditionError, LoadBalancerError, asyncio.TimeoutError) as e:
            self.end_state = EndState.PRECONDITION_FAILURE
            reason = str(e) or "timed out querying pool health"
            self.logger.error(f"Precondition failed: {reason}")
            raise PreconditionError(f"load balancer precondition failed: {reason}") from e
        self.logger.info(f"Pool {self.config.pattern} passed the precondition check")

        await self._run_canaries(self.actions[:self.config.canary_num])
        await self._run_bulk(self.actions[self.config.canary_num:])

        if self.failures > self.config.max_failures:
            self.end_state = EndState.MAX_FAILURES_EXCEEDED
            self.logger.error(f"Exceeded max failures: {self.failures} > {self.config.max_failures}")
            raise BudgetExceededError(f"exceeded max failures: {self.failures} > {self.config.max_failures}")

        self.end_state = EndState.SUCCESS
        if self.failures:
            self.logger.warning(f"Workflow completed with {self.failures} failed endpoints")
        else:
            self.logger.info("Workflow completed with no failures")

    async def _check_lb_state(self):
        """Make sure the pool holds exactly the configured backends before touching anything"""
        health = await self.lb.pool_health(self.config.pattern)

        if health.status is PoolStatus.EMPTY:
            if len(self.config.backends) != 0:
                raise PreconditionError(
                    f"pool {self.config.pattern} is empty but config lists {len(self.config.backends)} backends"
                )
            return

        if health.status is not PoolStatus.FULL:
            raise PreconditionError(f"pool was not at full health, was {health.status.value}")

        expected = {Backend(*check_ip_port(b)) for b in self.config.backends}
        found = set(health.backends)
        if expected != found:
            missing = sorted(b.address for b in expected - found)
            unexpected = sorted(b.address for b in found - expected)
            raise PreconditionError(
                f"pool backends do not match config: missing {missing}, not in config {unexpected}"
            )

    async def _run_canaries(self, canaries):
        for action in canaries:
            self.logger.info(f"Running canary on: {action.endpoint}")
            try:
                await action.run(timeout_s=self.timeouts.action_s)
            except Exception as e:
                self.end_state = EndState.CANARY_FAILURE
                self.logger.error(f"Canary failure on endpoint({action.endpoint}): {e}")
                raise CanaryError(f"canary failure on endpoint({action.endpoint}): {e}") from e

        if canaries:
            self.logger.info(f"Canaries passed, sleeping {self.timeouts.canary_cooldown_s}s before the bulk rollout")
            await asyncio.sleep(self.timeouts.canary_cooldown_s)

    async def _run_bulk(self, actions):
        limit = asyncio.Semaphore(self.config.concurrency)
        tasks = []

        for action in actions:
            await limit.acquire()
            if self.failures > self.config.max_failures:
                limit.release()
                self.logger.warning(
                    f"Failure budget exhausted ({self.failures} > {self.config.max_failures}), "
                    f"not admitting {action.endpoint} or anything after it"
                )
                break
            tasks.append(asyncio.create_task(self._run_bulk_action(action, limit)))

        # Whatever was admitted runs to completion, even if one of them blows up
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _run_bulk_action(self, action, limit):
        try:
            self.logger.info(f"Upgrading endpoint: {action.endpoint}")
            await action.run(timeout_s=self.timeouts.action_s)
        except ActionError as e:
            self.failures += 1
            self.logger.warning(f"Endpoint({action.endpoint}) had upgrade error: {e}")
        except Exception:
            self.failures += 1
            self.logger.exception(f"Endpoint({action.endpoint}) crashed during upgrade")
            raise
        finally:
            limit.release()

    async def retry_failed(self):
        """Re-run every failed Action once, all at the same time.

        Only valid after a run that ended in EndState.SUCCESS. Unlike the bulk
        phase there is no concurrency limit here.
        """
        if self.end_state is not EndState.SUCCESS:
            raise RuntimeError(
                f"retry_failed cannot be called unless the workflow was a success, was {self.end_state.value}"
            )

        failed = self.status().failures
        self.logger.info(f"Retrying {len(failed)} failed endpoints")
        await asyncio.gather(*(self._retry_action(a) for a in failed))

    async def _retry_action(self, action):
        try:
            await action.run(timeout_s=self.timeouts.action_s)
        except ActionError as e:
            self.logger.warning(f"Retry of {action.endpoint} failed: {e}")
            return
        self.failures -= 1

    async def retry_until_clean(self, passes=3, delay_s=300.0):
        """Retry failures up to passes times, delay_s apart.

        Returns the final status, raises RetryExhausted if endpoints are still
        failing after the last pass.
        """
        status = self.status()
        for attempt in range(1, passes + 1):
            if not status.failures:
                return status
            self.logger.info(f"Retrying {len(status.failures)} failed actions in {delay_s}s (pass {attempt}/{passes})")
            await asyncio.sleep(delay_s)
            await self.retry_failed()
            status = self.status()
            if status.failures:
                self.logger.warning(f"Retry pass {attempt} left {len(status.failures)} failed actions")

        if status.failures:
            raise RetryExhausted(status, passes)
        return status
