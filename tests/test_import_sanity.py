"""Import sanity tests.

These lightweight tests verify that the WSGI entrypoint and core modules
can be imported without errors — the minimum bar for a deploy.
"""

import pytest


def test_app_module_imports():
    """The Flask app module must import without errors."""
    import app  # noqa: F401


def test_wsgi_app_object():
    """Gunicorn's 'app:app' entrypoint must resolve to a Flask instance."""
    from app import app as flask_app
    assert flask_app is not None
    assert hasattr(flask_app, "route"), "app object is not a Flask instance"


def test_scoring_imports():
    """Core symbols used by the recompute path must be importable."""
    from score_job import calculate_and_save_score, run_full_sweep, run_job
    from safety_score import aggregate_overall_score, ComponentScores
    assert calculate_and_save_score is not None
    assert run_full_sweep is not None
    assert run_job is not None
    assert aggregate_overall_score is not None
    assert ComponentScores is not None


def test_background_imports():
    """Worker and scheduler are started from gunicorn's post_fork hook."""
    from worker import start_worker, stop_worker
    from scheduler import start_scheduler, stop_scheduler
    import gunicorn_config
    assert callable(gunicorn_config.post_fork)
    assert start_worker and stop_worker and start_scheduler and stop_scheduler


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
