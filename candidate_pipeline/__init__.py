"""Candidate evaluation pipeline: job queue, worker runtime and evaluator."""

__version__ = "0.1.0"
