import io
import sys
import textwrap
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture()
def write_file(tmp_path):
    """Write dedented source to tmp_path/<relative> and return the path as str."""

    def _write(relative, source=""):
        p = tmp_path / relative
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(textwrap.dedent(source), encoding="utf-8")
        return str(p)

    return _write


@pytest.fixture()
def out():
    return io.StringIO()


@pytest.fixture()
def two_file_tree(write_file, tmp_path):
    write_file(
        "a.test.py",
        """
        tests = [
            {"desc": "t1", "proc": lambda env: env.expect(True)},
        ]
        """,
    )
    write_file(
        "b.test.py",
        """
        def _t2(env):
            env.expect(False)
            env.expect(1)

        tests = [{"desc": "t2", "proc": _t2}]
        """,
    )
    return tmp_path
