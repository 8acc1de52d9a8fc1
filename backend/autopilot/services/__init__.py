"""Governance services: settings, guardrail-driven coordination, queue and audit."""
