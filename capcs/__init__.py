"""
CloudSigma reconciliation engine.

Modules:
- state: machine, cluster, floating IP and service binding records
- cloud: typed client for the CloudSigma REST API, error taxonomy, locking
- auth: impersonation token exchange and token cache
- store: desired-state store with optimistic-concurrency updates
- workqueue: per-key single-flight work queue and controller worker pool
- machine / cluster: reconcilers for compute instances and cluster networks
- loadbalancer / forwarding: floating IP allocation, failover and node-local forwarding
- manager / api: process wiring and operational REST surface
"""
