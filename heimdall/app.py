"""Application bootstrap for the Heimdall processes.

Two long-running processes share one lifecycle skeleton:

    InjectorApp  config -> logging -> K8s client -> keys client -> resolver
                 -> materializer -> recorder -> indexer/controller
                 -> watcher -> metrics endpoint
    KeysApp      config -> logging -> K8s client -> key store -> REST

Components are stopped in reverse startup order.  Each stop is wrapped
independently so one failing teardown does not block the others.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from heimdall.config import load_config
from heimdall.models.config import HeimdallConfig
from heimdall.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"{component}: startup failed: {cause}")
        self.component = component
        self.cause = cause


class _BaseApp:
    """Shared config, logging and Kubernetes client handling."""

    name = "heimdall"

    def __init__(self, config: HeimdallConfig | None = None) -> None:
        self.config: HeimdallConfig | None = config
        self._api_client: Any | None = None
        # (name, component) in startup order; stopped in reverse.
        self._components: list[tuple[str, object]] = []
        self._background_tasks: list[asyncio.Task[None]] = []
        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Bring up the Kubernetes client and then the process components.

        Any startup failure surfaces as _ComponentError.
        """
        if self.config is None:
            self.config = load_config()

        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info(f"{self.name} starting", version=_heimdall_version())

        await self._start_k8s_client()
        await self._start_components()

        self._running = True
        self._log.info(f"{self.name} started")

    async def _start_components(self) -> None:
        raise NotImplementedError

    async def _start_k8s_client(self) -> None:
        """Build the shared ApiClient. An explicit kubeconfig wins over in-cluster config."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("configuring kubernetes client")
        try:
            import kubernetes_asyncio.config as k8s_config
            from kubernetes_asyncio import client as k8s_client

            if self.config.kubeconfig:
                await k8s_config.load_kube_config(config_file=self.config.kubeconfig)
                self._log.info("kubernetes client using kubeconfig", path=self.config.kubeconfig)
            else:
                try:
                    k8s_config.load_incluster_config()
                    self._log.info("kubernetes client using service account")
                except k8s_config.ConfigException:
                    await k8s_config.load_kube_config()
                    self._log.info("kubernetes client using kubeconfig")

            self._api_client = k8s_client.ApiClient()
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    def _register(self, name: str, component: object) -> None:
        self._components.append((name, component))

    async def stop(self) -> None:
        """Stop registered components last-first, then background tasks and the client."""
        if self._log is None:
            return

        log = self._log
        log.info(f"{self.name} shutting down")
        self._running = False

        for name, component in reversed(self._components):
            await self._stop_component(name, component)
        self._components.clear()

        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self._stop_k8s_client()
        log.info(f"{self.name} stopped")

    async def _stop_component(self, name: str, component: object) -> None:
        """Stop one component within the grace period. Errors are logged, not raised."""
        log = self._log or get_logger("app")
        stopper = getattr(component, "stop", None)
        if stopper is None:
            return
        try:
            result = stopper()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component did not stop in time", component=name, grace_seconds=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component failed to stop", component=name, error=str(exc))

    async def _stop_k8s_client(self) -> None:
        if self._api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._api_client.close()
        except Exception as exc:
            log.debug("closing kubernetes client failed", error=str(exc))
        self._api_client = None


class InjectorApp(_BaseApp):
    """The injection controller process."""

    name = "heimdall-injector"

    def __init__(self, config: HeimdallConfig | None = None) -> None:
        super().__init__(config)
        self.controller: object | None = None

    async def _start_components(self) -> None:
        assert self._log is not None
        assert self.config is not None
        try:
            from kubernetes_asyncio import client as k8s_client

            from heimdall.controller import (
                EventRecorder,
                InjectionController,
                WorkloadIndexer,
                WorkloadWatcher,
            )
            from heimdall.keys import KeysClient
            from heimdall.materializer import Materializer
            from heimdall.source import ConfigurationResolver

            core_v1 = k8s_client.CoreV1Api(self._api_client)
            apps_v1 = k8s_client.AppsV1Api(self._api_client)

            keys_client = KeysClient(self.config.keys.address, timeout=self.config.keys.timeout_seconds)
            self._register("keys_client", keys_client)

            indexer = WorkloadIndexer()
            controller = InjectionController(
                apps_v1=apps_v1,
                core_v1=core_v1,
                indexer=indexer,
                resolver=ConfigurationResolver(),
                materializer=Materializer(core_v1, keys_client),
                recorder=EventRecorder(core_v1),
                config=self.config.injector,
            )
            watcher = WorkloadWatcher(apps_v1, indexer, controller.handle_event)
        except Exception as exc:
            raise _ComponentError("controller", exc) from exc

        # Controller before watcher: its workers wait for the first list.
        self._log.debug("starting controller")
        task = asyncio.create_task(controller.start(), name="controller-start")
        self._background_tasks.append(task)
        self._register("controller", controller)
        self.controller = controller

        self._log.debug("starting watcher")
        await watcher.start()
        self._register("watcher", watcher)

        self._start_metrics_server()
        self._log.info(
            "injector configured",
            keys_address=self.config.keys.address,
            workers=self.config.injector.workers,
            configmap_cleanup=self.config.injector.configmap_cleanup,
            git_credentials=self.config.injector.git_credentials or None,
        )

    def _start_metrics_server(self) -> None:
        assert self._log is not None
        assert self.config is not None
        port = self.config.injector.metrics_port
        if not port:
            self._log.info("metrics endpoint disabled (metrics_port=0)")
            return
        try:
            from prometheus_client import start_http_server

            start_http_server(port)
            self._log.info("metrics endpoint started", port=port)
        except OSError as exc:
            raise _ComponentError("metrics", exc) from exc


class KeysApp(_BaseApp):
    """The key service process."""

    name = "heimdall-keys"

    async def _start_components(self) -> None:
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting key service")
        try:
            import uvicorn
            from kubernetes_asyncio import client as k8s_client

            from heimdall.keys import KeyStore, create_app

            store = KeyStore(k8s_client.CoreV1Api(self._api_client))
            uv_config = uvicorn.Config(
                app=create_app(store),
                host=self.config.keys.host,
                port=self.config.keys.port,
                log_config=None,
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="keys-server")
            self._background_tasks.append(task)
            self._register("rest", _UvicornHandle(server, task))
            self._log.info("key service started", host=self.config.keys.host, port=self.config.keys.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc


class _UvicornHandle:
    """Stops a uvicorn server started with ``serve()`` in a task."""

    def __init__(self, server: Any, task: asyncio.Task[None]) -> None:
        self._server = server
        self._task = task

    async def stop(self) -> None:
        self._server.should_exit = True
        await asyncio.wait([self._task], timeout=_SHUTDOWN_GRACE_SECONDS)


def _heimdall_version() -> str:
    from heimdall import __version__

    return __version__


async def _run(app: _BaseApp) -> None:
    """Register OS signals and run *app* until shutdown is requested."""
    loop = asyncio.get_running_loop()
    stopped = asyncio.Event()
    requested = False

    async def _shutdown() -> None:
        await app.stop()
        stopped.set()

    def _on_signal() -> None:
        nonlocal requested
        if requested:
            return
        requested = True
        asyncio.create_task(_shutdown(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _on_signal)

    try:
        await app.start()
        await stopped.wait()
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()


async def run_injector(config: HeimdallConfig | None = None) -> None:
    await _run(InjectorApp(config))


async def run_keys(config: HeimdallConfig | None = None) -> None:
    await _run(KeysApp(config))
