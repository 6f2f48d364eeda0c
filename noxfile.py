import os

import nox

PYTHON_VERSIONS = ["3.11", "3.12", "3.13"]


def _install(session: nox.Session) -> None:
    """Install the project with its test extra into the nox virtualenv."""
    session.install("-e", ".[test]")


@nox.session(python=PYTHON_VERSIONS)
def tests(session: nox.Session) -> None:
    """Run the full suite; PostgreSQL store tests run when TEST_DATABASE_URL is set."""
    _install(session)
    session.run("pytest", *session.posargs)


@nox.session(python=PYTHON_VERSIONS[-1])
def tests_db(session: nox.Session) -> None:
    """Run the store tests against a real PostgreSQL (TEST_DATABASE_URL required)."""
    if not os.environ.get("TEST_DATABASE_URL"):
        session.error("TEST_DATABASE_URL must point at a PostgreSQL database")
    _install(session)
    session.run("pytest", "tests/test_store.py", env={"REQUIRE_TEST_DATABASE": "1"})
