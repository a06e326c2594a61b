from __future__ import annotations

from typing import Any, Dict

from flask import Flask, jsonify, request

from capcs.manager import ControllerManager


def create_app(manager: ControllerManager) -> Flask:
	app = Flask(__name__)
	# Store the manager in app config so it's accessible in all endpoints
	app.config['capcs_manager'] = manager

	@app.get("/healthz")
	def healthz() -> Any:
		manager = app.config['capcs_manager']
		if not manager.running:
			return jsonify({"status": "stopped"}), 503
		return jsonify({"status": "ok"})

	@app.get("/readyz")
	def readyz() -> Any:
		manager = app.config['capcs_manager']
		snapshot = manager.snapshot()
		if not snapshot["ready"]:
			return jsonify({"status": "not ready", **snapshot}), 503
		return jsonify({"status": "ready", **snapshot})

	@app.get("/bindings")
	def bindings() -> Any:
		lb = app.config['capcs_manager'].loadbalancer
		if lb is None:
			return jsonify({"bindings": [], "enabled": False})
		return jsonify({"bindings": [b.to_dict() for b in lb.bindings()], "enabled": True})

	@app.get("/pools")
	def pools() -> Any:
		lb = app.config['capcs_manager'].loadbalancer
		if lb is None:
			return jsonify({"error": "floating IP load balancing is disabled"}), 404
		return jsonify(lb.pools())

	@app.post("/observe")
	def observe() -> Any:
		manager = app.config['capcs_manager']
		body: Dict[str, Any] = request.get_json(force=True, silent=True) or {}
		etype = body.get("type")
		node = body.get("node")

		if not etype or not node:
			return jsonify({"error": "missing 'type' or 'node' field"}), 400
		if etype not in ("node_down", "node_up"):
			return jsonify({"error": f"unknown event type: {etype}"}), 400

		affected = manager.observe(etype, node)
		return jsonify({"status": "ok", "node": node, "event": etype, "failover": affected})

	return app
