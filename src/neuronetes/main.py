"""Main operator entrypoint using Kopf."""

import asyncio
import logging

import kopf

from . import crd
from .config import OperatorConfig
from .errors import InvalidSpecError
from .k8s import get_clients
from .reconcile import Controller, ReconcileBusy
from .resources import AgentPool, Model
from .telemetry import OperatorMetrics, serve

CONFIG = OperatorConfig.from_env()

# Configure logging
logging.basicConfig(
    level=CONFIG.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_controller = None


def get_controller():
    """Build the controller on first use."""
    global _controller
    if _controller is None:
        v1, custom_api = get_clients()
        _controller = Controller.from_config(CONFIG, v1, custom_api, OperatorMetrics())
    return _controller


async def run_control_loop(stopped, tick, label):
    """Tick until the resource is gone or the daemon is stopped.

    Each tick returns the delay before the next one; errors never end the
    loop, they only pick a longer delay. A tick borrows a worker thread only
    while it runs, so any number of resources share a small executor.
    """
    while not stopped:
        try:
            delay = await asyncio.to_thread(tick)
        except ReconcileBusy:
            delay = CONFIG.pending_interval
        except Exception as e:
            logger.error(f"Control loop error for {label}: {e}", exc_info=True)
            delay = CONFIG.error_interval

        if delay is None:
            logger.info(f"{label} is gone, stopping its control loop")
            return
        logger.debug(f"Next tick for {label} in {delay:.1f}s")
        await stopped.wait(delay)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **kwargs):
    """Operator-wide settings and the self-metrics endpoint."""
    settings.posting.level = logging.WARNING
    serve(CONFIG.metrics_port)
    get_controller()
    logger.info(
        f"neuronetes operator started (namespaces: {CONFIG.namespaces or 'all'}, "
        f"steady interval {CONFIG.steady_interval:.0f}s)"
    )


@kopf.on.cleanup()
def shutdown(**kwargs):
    """Close the weight cache and metrics clients on exit."""
    if _controller is not None:
        _controller.close()
    logger.info("neuronetes operator stopped")


# ----------------------------------------------------------------------
# Models
# ----------------------------------------------------------------------
@kopf.daemon(crd.GROUP, crd.VERSION, crd.MODEL_PLURAL, cancellation_timeout=10.0)
async def model_daemon(stopped, name, namespace, **kwargs):
    """One control loop per Model."""
    logger.info(f"Starting control loop for Model {namespace}/{name}")
    controller = get_controller()
    await run_control_loop(
        stopped,
        lambda: controller.reconcile_model(namespace, name),
        f"Model {namespace}/{name}",
    )


@kopf.on.update(crd.GROUP, crd.VERSION, crd.MODEL_PLURAL, field="spec")
def model_update(body, name, namespace, **kwargs):
    """Reconcile immediately when a Model's spec changes."""
    logger.info(f"Handling Model {name} update in namespace {namespace}")
    try:
        Model.from_body(body)
        get_controller().reconcile_model(namespace, name)
    except InvalidSpecError as e:
        logger.error(f"Validation error: {e}")
        raise kopf.PermanentError(str(e))
    except ReconcileBusy as e:
        raise kopf.TemporaryError(str(e), delay=CONFIG.pending_interval)
    except Exception as e:
        logger.error(f"Reconciliation error: {e}", exc_info=True)
        raise kopf.TemporaryError(f"Reconciliation failed: {e}", delay=CONFIG.error_interval)


@kopf.on.delete(crd.GROUP, crd.VERSION, crd.MODEL_PLURAL)
def model_delete(body, name, namespace, **kwargs):
    """Release cached weights for a deleted Model."""
    logger.info(f"Model {name} deleted, releasing cached weights")
    try:
        get_controller().delete_model(body)
    except ReconcileBusy as e:
        raise kopf.TemporaryError(str(e), delay=CONFIG.pending_interval)


# ----------------------------------------------------------------------
# Agent pools
# ----------------------------------------------------------------------
@kopf.daemon(crd.GROUP, crd.VERSION, crd.AGENTPOOL_PLURAL, cancellation_timeout=10.0)
async def agentpool_daemon(stopped, name, namespace, **kwargs):
    """One control loop per AgentPool."""
    logger.info(f"Starting control loop for AgentPool {namespace}/{name}")
    controller = get_controller()
    await run_control_loop(
        stopped,
        lambda: controller.reconcile_pool(namespace, name),
        f"AgentPool {namespace}/{name}",
    )


@kopf.on.update(crd.GROUP, crd.VERSION, crd.AGENTPOOL_PLURAL, field="spec")
def agentpool_update(body, name, namespace, **kwargs):
    """Reconcile immediately when an AgentPool's spec changes."""
    logger.info(f"Handling AgentPool {name} update in namespace {namespace}")
    try:
        AgentPool.from_body(body)
        get_controller().reconcile_pool(namespace, name)
    except InvalidSpecError as e:
        logger.error(f"Validation error: {e}")
        raise kopf.PermanentError(str(e))
    except ReconcileBusy as e:
        raise kopf.TemporaryError(str(e), delay=CONFIG.pending_interval)
    except Exception as e:
        logger.error(f"Reconciliation error: {e}", exc_info=True)
        raise kopf.TemporaryError(f"Reconciliation failed: {e}", delay=CONFIG.error_interval)


@kopf.on.delete(crd.GROUP, crd.VERSION, crd.AGENTPOOL_PLURAL)
def agentpool_delete(body, name, namespace, **kwargs):
    """Tear down every replica of a deleted AgentPool."""
    logger.info(f"AgentPool {name} deleted, tearing down replicas")
    try:
        get_controller().delete_pool(body)
    except ReconcileBusy as e:
        raise kopf.TemporaryError(str(e), delay=CONFIG.pending_interval)


if __name__ == "__main__":
    kopf.run(clusterwide=CONFIG.clusterwide, namespaces=CONFIG.namespaces)
