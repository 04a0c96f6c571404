"""Agent orchestration engine: scheduler, jobs, pipeline, gatekeeper and velocity cache."""
