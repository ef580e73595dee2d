import argparse
import asyncio
import json
import sys

from .config import load_config
from .engine import Workflow
from .errors import BudgetExceededError, CanaryError, ConfigError, LoadBalancerError, PreconditionError, RetryExhausted
from .lb import HTTPLoadBalancer
from .logger import LEVELS, setup_logging, get_logger
from .models import HealthChecks, PoolType, StatusCheck


async def ensure_pool(lb, pattern):
    """Create the pool if the load balancer does not know about it yet"""
    logger = get_logger("cli")
    try:
        await lb.pool_health(pattern)
        return False
    except LoadBalancerError as e:
        logger.info(f"Pool {pattern} not found ({e}), creating it")

    await lb.add_pool(
        pattern,
        PoolType.P2C,
        HealthChecks(checks=[StatusCheck(url_path="/healthz", healthy_values=["ok", "OK"])], interval_s=5.0),
    )
    return True


def print_status(status, error=None):
    report = status.to_dict()
    if error is not None:
        report["error"] = str(error)
    print(json.dumps(report, indent=2))


async def rollout(config, lb, retries=3, retry_delay_s=300.0, channels=None, http_client=None, timeouts=None):
    """Drive a whole rollout and return the process exit code"""
    logger = get_logger("cli")
    try:
        await ensure_pool(lb, config.pattern)
    except LoadBalancerError as e:
        logger.error(f"LB did not have pool {config.pattern} and couldn't create it: {e}")
        return 1

    try:
        workflow = Workflow(config, lb, channels=channels, http_client=http_client, timeouts=timeouts)
    except ConfigError as e:
        logger.error(f"Could not create workflow: {e}")
        return 1

    try:
        logger.info("Starting workflow")
        try:
            await workflow.run()
        except PreconditionError as e:
            print_status(workflow.status(), error=e)
            return 1
        except (CanaryError, BudgetExceededError) as e:
            logger.error(f"Workflow failed: {workflow.end_state.value}")
            print_status(workflow.status(), error=e)
            return 1

        try:
            status = await workflow.retry_until_clean(passes=retries, delay_s=retry_delay_s)
        except RetryExhausted as e:
            logger.error(f"Workflow completed but with {len(e.status.failures)} failures after retries exhausted")
            print_status(e.status, error=e)
            return 1

        print_status(status)
        return 0
    finally:
        await workflow.aclose()


def main():
    parser = argparse.ArgumentParser(description="Rolling binary upgrade behind a load balancer")
    parser.add_argument("config", help="path to the JSON rollout config")
    parser.add_argument("--log-level", default="INFO", choices=LEVELS)
    parser.add_argument("--retries", type=int, default=3, help="retry passes over failed endpoints")
    parser.add_argument("--retry-delay", type=float, default=300.0, help="seconds between retry passes")
    args = parser.parse_args()
    setup_logging(args.log_level)

    try:
        config = load_config(args.config)
    except (OSError, json.JSONDecodeError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    async def run():
        lb = HTTPLoadBalancer(config.lb)
        try:
            return await rollout(config, lb, retries=args.retries, retry_delay_s=args.retry_delay)
        finally:
            await lb.aclose()

    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
