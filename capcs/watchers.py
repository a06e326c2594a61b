"""Watch streams feeding controller queues and node health."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional

from kubernetes import client, watch

from capcs.tenant import node_from_api

logger = logging.getLogger(__name__)


class Watchers:
	"""
	Runs Kubernetes watch streams on daemon threads.

	Uses:
	- the desired-state store watch for machine and cluster records
	- the core watch API for services and nodes of the workload cluster
	"""

	def __init__(self, stop_event: Optional[threading.Event] = None, timeout_seconds: int = 60) -> None:
		self.timeout_seconds = timeout_seconds
		self._stop_event = stop_event or threading.Event()
		self._threads: List[threading.Thread] = []

	def watch_store(self, name: str, store: Any, enqueue: Callable[[str], None]) -> None:
		"""Enqueue the key of every changed record of ``store``."""
		def loop() -> None:
			while not self._stop_event.is_set():
				try:
					for _, obj in store.watch(self._stop_event, timeout_seconds=self.timeout_seconds):
						meta = obj.get("metadata") or {}
						if meta.get("name"):
							enqueue(f"{meta.get('namespace', 'default')}/{meta['name']}")
				except Exception as e:
					logger.error(f"Error watching {name}: {e}")
					self._stop_event.wait(5.0)

		self._spawn(f"watch-{name}", loop)

	def watch_services(self, core: client.CoreV1Api, enqueue: Callable[[str], None]) -> None:
		"""Enqueue LoadBalancer services, and any deleted service, by key."""
		def handle(event_type: str, svc) -> None:
			spec_type = svc.spec.type if svc.spec else None
			if spec_type == "LoadBalancer" or event_type == "DELETED":
				enqueue(f"{svc.metadata.namespace}/{svc.metadata.name}")

		self._spawn("watch-services", lambda: self._stream_loop("services", core.list_service_for_all_namespaces, handle))

	def watch_nodes(self, core: client.CoreV1Api, on_health: Callable[[str, bool], Any]) -> None:
		"""Report node readiness transitions; deleted nodes count as unhealthy."""
		last: dict = {}

		def handle(event_type: str, node) -> None:
			info = node_from_api(node)
			healthy = info.ready and event_type != "DELETED"
			if last.get(info.name) == healthy:
				return
			last[info.name] = healthy
			on_health(info.name, healthy)

		self._spawn("watch-nodes", lambda: self._stream_loop("nodes", core.list_node, handle))

	def stop(self) -> None:
		self._stop_event.set()
		for t in self._threads:
			t.join(timeout=5.0)
		self._threads.clear()

	def _spawn(self, name: str, target: Callable[[], None]) -> None:
		t = threading.Thread(target=target, name=name, daemon=True)
		t.start()
		self._threads.append(t)

	def _stream_loop(self, what: str, list_func, handle: Callable[[str, Any], None]) -> None:
		w = watch.Watch()
		while not self._stop_event.is_set():
			try:
				for event in w.stream(list_func, timeout_seconds=self.timeout_seconds):
					if self._stop_event.is_set():
						w.stop()
						break
					handle(event["type"], event["object"])
			except Exception as e:
				logger.error(f"Error watching {what}: {e}")
				self._stop_event.wait(5.0)
