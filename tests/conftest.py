"""
Shared fixtures: a fresh graph database per test, a seeded study session and
fake agent executables.
"""

import shlex
import sys
import textwrap

import pytest

from studygraph.graph.models import ResourceType
from studygraph.graph.store import GraphDB

SESSION = "session-1"


@pytest.fixture
def db(tmp_path):
    graph = GraphDB(path=str(tmp_path / "graph.db"))
    graph.init()
    return graph


def add_resource(db, name, rtype, sections, *, session_id=SESSION, files=(), indexed=True):
    """Insert a resource with flat sections given as (title, content) pairs."""
    with db.transaction() as tx:
        resource = tx.add_resource(session_id=session_id, name=name, type=rtype, is_indexed=indexed)
        for filename, role, content in files:
            tx.add_file(resource_id=resource.id, filename=filename, role=role, content=content)
        chunks = [
            tx.add_chunk(resource_id=resource.id, index=i, title=title, content=content, depth=1)
            for i, (title, content) in enumerate(sections)
        ]
    return resource, chunks


@pytest.fixture
def lecture(db):
    return add_resource(
        db,
        "Lecture 1",
        ResourceType.LECTURE_NOTES,
        [
            ("1.1 Overview", "The heat equation describes diffusion of heat."),
            ("1.2 Separation of Variables", "We solve the heat equation by separation of variables."),
            ("1.3 Fourier Series", "Initial data is expanded as a Fourier series."),
        ],
    )


@pytest.fixture
def past_paper(db):
    return add_resource(
        db,
        "2023 Exam",
        ResourceType.PAST_PAPER,
        [
            ("Q1a", "Solve the heat equation on [0, L] with Dirichlet boundary conditions."),
            ("Q1b", "Compute the Fourier series of f(x) = x."),
        ],
        files=[("exam.pdf", "PRIMARY", "Q1a ..."), ("ms.pdf", "MARK_SCHEME", "Q1a: 6 marks")],
    )


@pytest.fixture
def fake_agent(tmp_path):
    """Write a Python script that stands in for the agent executable.

    The script runs in the attempt directory; ``body`` sees ``Path``, ``json``,
    ``os``, ``sys`` and ``time``. Returns the command string for the runner.
    """
    counter = {"n": 0}

    def make(body):
        counter["n"] += 1
        script = tmp_path / f"agent_{counter['n']}.py"
        script.write_text(
            "import json, os, sys, time\n"
            "from pathlib import Path\n\n" + textwrap.dedent(body),
            encoding="utf-8",
        )
        return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"

    return make
