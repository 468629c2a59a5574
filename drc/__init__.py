"""Deployment Rollout Controller (DRC).

Single-node control plane that deploys a multi-service container stack:
 - dependency-ordered, strictly sequential service starts
 - health-gated progression (a dependent never starts before its dependencies are healthy)
 - a migration gate in front of traffic-serving services
 - per-service rollback to a previous image, decided by the caller

External systems (docker daemon, health endpoints, migration runner) are
collaborators; the controller only sequences them.
"""
