"""Example config: python sanity_runner.py samples samples/sanity_config.py"""
import time

_started = {}


def _before_file(file, tests, env):
    _started[file] = time.perf_counter()


def _after_file(file, tests, env):
    print(f"  {len(tests)} tests in {time.perf_counter() - _started.pop(file):.3f}s")


config = {
    "test_file_extension": ".test.py",
    "before_file": _before_file,
    "after_file": _after_file,
}
