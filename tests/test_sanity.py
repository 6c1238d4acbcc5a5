"""Package sanity checks.

Confirms the package installs correctly and its public contract is intact.
These tests should always pass; a failure here means the build is broken.
"""

import waypoint


def test_version_is_declared() -> None:
    assert isinstance(waypoint.__version__, str)
    assert waypoint.__version__  # non-empty


def test_cli_app_is_importable() -> None:
    from waypoint.cli import app

    assert app is not None


def test_app_factory_is_importable() -> None:
    from waypoint.app import create_app

    assert callable(create_app)
