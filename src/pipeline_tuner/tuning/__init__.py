"""Tuning steps run by :func:`pipeline_tuner.orchestrator.run_tuning_pass`."""
