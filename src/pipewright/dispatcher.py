# dispatcher.py
from __future__ import annotations

import logging
import signal
import threading
from typing import Dict, Iterable, List, Mapping, Optional

from .actions import ActionRegistry
from .errors import ValidationError
from .loader import validate_definition
from .model import Event, Run
from .scheduler import Scheduler
from .secrets import SecretProvider, SecretStore
from .triggers import EventQueue, TriggerEvaluator
from .ui.console import Console

log = logging.getLogger(__name__)


class Dispatcher:
    """
    Consumes the inbound event queue: match -> validate -> schedule.

    Ingestion (webhooks, CLI submit) only ever touches the queue, so the API
    stays responsive while long runs execute here.
    """

    def __init__(
        self,
        queue: EventQueue,
        evaluator: TriggerEvaluator,
        scheduler: Scheduler,
        secret_store: SecretStore,
        *,
        registry: Optional[ActionRegistry] = None,
        grants: Optional[Mapping[str, Iterable[str]]] = None,
        console: Optional[Console] = None,
        queue_name: str = "memory",
    ):
        """
        Args:
            queue: Event source (in-memory or Redis)
            evaluator: Trigger rules for every known pipeline
            scheduler: Scheduler used for every run
            secret_store: Backend secrets are read from
            grants: Explicit secret grants; by default each job is granted
                    the secrets its definition references
        """
        self.queue = queue
        self.evaluator = evaluator
        self.scheduler = scheduler
        self.secret_store = secret_store
        self.registry = registry
        self.grants = grants
        self.console = console or scheduler.console
        self.queue_name = queue_name
        self.running = True
        self.runs: Dict[str, str] = {}  # event id -> run id

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        self.console.print_info(f"\nReceived signal {signum}, shutting down gracefully...")
        self.stop()

    def stop(self) -> None:
        self.running = False
        for run_id in self.scheduler.active_runs():
            self.scheduler.cancel(run_id)

    def _provider(self, definition) -> SecretProvider:
        if self.grants is not None:
            return SecretProvider(self.secret_store, self.grants)
        return SecretProvider.from_definition(self.secret_store, definition)

    def handle(self, event: Event) -> Optional[Run]:
        """Run the pipeline event matches. None if nothing matched or the definition is invalid."""
        self.console.print_event_received(event.kind.value, event.branch, event.id)

        definition = self.evaluator.match(event)
        if definition is None:
            self.console.print_info("No pipeline matched this event; nothing to do.")
            return None

        try:
            graph = validate_definition(definition, self.registry)
        except ValidationError as e:
            self.console.print_error("Invalid pipeline", str(e))
            return None

        run = self.scheduler.run(graph, event, secrets=self._provider(definition))
        self.runs[event.id] = run.id
        self.console.print_results(run)
        return run

    def run_forever(self, poll_interval: float = 5.0) -> None:
        """Poll the queue until stop() or SIGINT/SIGTERM."""
        # signal handlers can only be installed from the main thread
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

        self.console.print_dispatcher_started(
            queue_name=self.queue_name,
            pipelines=[d.name for d in self.evaluator.definitions],
            poll_interval=poll_interval,
        )
        while self.running:
            try:
                event = self.queue.get(timeout=poll_interval)
                if event is not None:
                    self.handle(event)
            except Exception as e:
                # keep consuming; one bad event must not stop the dispatcher
                log.exception("dispatcher error")
                self.console.print_exception(e)
        self.console.print_info("Dispatcher stopped.")

    def start_background(self, poll_interval: float = 1.0) -> threading.Thread:
        t = threading.Thread(target=self.run_forever, args=(poll_interval,), name="pipewright-dispatcher", daemon=True)
        t.start()
        return t

    def pipelines(self) -> List[str]:
        return [d.name for d in self.evaluator.definitions]
