"""Orchestration components: dependency analysis, health, alerts, assignment, cycle."""
