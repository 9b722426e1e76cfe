"""Minimal sequential test harness: discover *.test.py files, run their tests, print a report.

Usage:
    python sanity_runner.py ./src
    python sanity_runner.py ~/project ~/project/sanity_config.py

Key flags:
    --no-color, --strict-load, --verbose

A test file is any Python file whose name contains the configured extension
(default ".test.py") and which exposes a ``tests`` list. Each test gets the
run's ExecutionContext and reports results through ``env.expect(value)``,
which never raises.
"""
from __future__ import annotations

import argparse
import importlib.util
import logging
import numbers
import os
import re
import sys
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TextIO

LOG = logging.getLogger("sanity.runner")

DEFAULT_EXTENSION = ".test.py"
LINE_WIDTH = 80

EXIT_OK = 0
EXIT_TESTS_FAILED = 1
EXIT_FATAL = 2


class SanityError(Exception):
    pass


class ConfigurationError(SanityError):
    pass


class FilesystemError(SanityError, OSError):
    pass


class TestLoadError(SanityError):
    __test__ = False


class HookError(SanityError):
    pass


class _Missing:
    def __repr__(self):
        return "MISSING"


MISSING = _Missing()


def _noop(*args, **kwargs):
    return None


# ---------------------------------------------------------------------------
# data model


@dataclass(frozen=True)
class TestCase:
    __test__ = False

    description: str
    procedure: Callable[["ExecutionContext"], None]


@dataclass(frozen=True)
class Configuration:
    test_file_extension: str = DEFAULT_EXTENSION
    before_all: Callable = _noop
    after_all: Callable = _noop
    before_file: Callable = _noop
    after_file: Callable = _noop
    before_test: Callable = _noop
    after_test: Callable = _noop

    HOOKS = ("before_all", "after_all", "before_file", "after_file", "before_test", "after_test")

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "Configuration":
        """Merge user options over the defaults, field by field."""
        kwargs: Dict[str, Any] = {}
        for key, value in options.items():
            if key == "test_file_extension":
                if not value:
                    # empty/None falls back to the default, like an absent key
                    continue
                if not isinstance(value, str):
                    raise ConfigurationError(f"test_file_extension must be a string, got {type(value).__name__}")
                kwargs[key] = value
            elif key in cls.HOOKS:
                if value is None:
                    continue
                if not callable(value):
                    raise ConfigurationError(f"{key} must be callable, got {type(value).__name__}")
                kwargs[key] = value
            else:
                LOG.warning("ignoring unknown config option %r", key)
        return cls(**kwargs)


class PerTestCounters:
    def __init__(self):
        self.file = ""
        self.passed = 0
        self.failed = 0
        self.failure_locations: List[str] = []

    def reset(self, file_path: str = ""):
        self.file = file_path
        self.passed = 0
        self.failed = 0
        self.failure_locations = []


@dataclass
class InvalidFile:
    path: str
    reason: str


@dataclass
class RunResult:
    passed: int = 0
    failed: int = 0
    files: List[str] = field(default_factory=list)
    invalid_files: List[InvalidFile] = field(default_factory=list)
    exit_code: int = EXIT_OK


# ---------------------------------------------------------------------------
# discovery


def scan(root_directory: str, suffix: str) -> List[str]:
    """Breadth-first walk of root_directory returning files whose name contains suffix.

    Matching is a case-insensitive substring test on the file name, so
    ``a.test.py.bak`` and ``A.TEST.PY`` both match ``.test.py``. Entries of a
    single directory are visited in name order; directories found along the
    way are queued behind the current one.
    """
    needle = suffix.lower()
    result: List[str] = []
    dirs = [os.path.abspath(root_directory)]
    i = 0
    while i < len(dirs):
        dir_at = dirs[i]
        i += 1
        try:
            names = sorted(os.listdir(dir_at))
        except OSError as e:
            raise FilesystemError(e.errno, f"cannot list directory: {e.strerror}", dir_at) from e
        for name in names:
            path = os.path.join(dir_at, name)
            if os.path.isdir(path):
                dirs.append(path)
            elif needle in name.lower():
                result.append(path)
    LOG.debug("scanned %d directories under %s, %d matches", len(dirs), root_directory, len(result))
    return result


# ---------------------------------------------------------------------------
# assertions / execution context


def is_falsy_for_testing(value: Any) -> bool:
    """True only for MISSING, None, False and numeric zero.

    Empty strings and containers, and NaN, are *not* falsy here.
    Boolean scalars that are neither ``bool`` nor ``numbers.Number``
    (``numpy.False_``, for one) are not recognised and count as a pass;
    convert them with ``bool()`` before calling expect.
    """
    if value is MISSING or value is None or value is False:
        return True
    if isinstance(value, numbers.Number):
        try:
            return value == 0
        except TypeError:
            return False
    return False


def _caller_location(skip: int = 2) -> str:
    # extract_stack is oldest-first; the last entry is this helper.
    frame = traceback.extract_stack(limit=skip + 1)[0]
    return f"{frame.filename}:{frame.lineno}"


class AssertionTracker:
    """Collects expect() results for the test currently running."""

    def __init__(self):
        self.per_test = PerTestCounters()

    def expect(self, value: Any = MISSING) -> None:
        if not is_falsy_for_testing(value):
            self.per_test.passed += 1
            return
        self.per_test.failed += 1
        self.per_test.failure_locations.append(_caller_location())

    def record_fault(self, exc: BaseException) -> None:
        """Count an exception escaping a test as a single failed expect."""
        tb = traceback.extract_tb(exc.__traceback__)
        where = f"{tb[-1].filename}:{tb[-1].lineno}" if tb else "<unknown>"
        self.per_test.failed += 1
        self.per_test.failure_locations.append(f"{where} ({type(exc).__name__}: {exc})")


class ExecutionContext(AssertionTracker):
    """State handed to every test procedure and hook for the whole run."""

    def __init__(self, config: Optional[Configuration] = None):
        super().__init__()
        self.config = config or Configuration()
        self.passed = 0
        self.failed = 0

    def test_prepare(self, file_path: str = "") -> None:
        self.per_test.reset(file_path)

    def test_cleanup(self) -> None:
        self.passed += self.per_test.passed
        self.failed += self.per_test.failed

    @property
    def test_passed(self) -> bool:
        return self.per_test.failed == 0


# ---------------------------------------------------------------------------
# reporting


class _c:
    green = "\033[32m"
    red = "\033[31m"
    reset = "\033[0m"


class Reporter:
    def __init__(self, stream: Optional[TextIO] = None, color: bool = True, width: int = LINE_WIDTH):
        self.stream = stream
        self.color = color
        self.width = width

    def _paint(self, text: str, code: str) -> str:
        if not self.color:
            return text
        return f"{code}{text}{_c.reset}"

    def line(self, text: str = "") -> None:
        out = self.stream or sys.stdout
        out.write(text + "\n")
        out.flush()

    def file_header(self, file_path: str) -> None:
        self.line(f"======= {self._paint(file_path, _c.green)} =========")

    def format_test_line(self, description: str, passed: bool) -> str:
        label = f"Test: {description}"
        if len(label) > self.width:
            label = label[: self.width - 3] + "..."
        label += "-" * (self.width - len(label))
        tag = self._paint("PASS", _c.green) if passed else self._paint("FAIL", _c.red)
        return f"{label}[{tag}]"

    def test_result(self, description: str, passed: bool, failure_locations: Sequence[str] = ()) -> None:
        self.line(self.format_test_line(description, passed))
        for location in failure_locations:
            self.line(f"    Expect Failed: {location}")

    def summary(self, passed: int, failed: int) -> None:
        self.line(f"Total Passed/Failed: ({passed}/{failed})")
        if failed == 0:
            self.line(self._paint("ALL TESTS PASSED", _c.green))
        else:
            self.line(self._paint("TESTS FAILED", _c.red))

    def invalid_files(self, invalid: Sequence[InvalidFile]) -> None:
        if not invalid:
            return
        self.line()
        self.line("Invalid Test Files were found.")
        self.line("  This does not prevent correct execution of other tests.")
        self.line()
        self.line("Invalid Test Files:")
        for item in invalid:
            self.line(f"  {self._paint(item.path, _c.red)}")
            if item.reason:
                self.line(f"    {item.reason}")

    def error(self, message: str, problem_path: Optional[str] = None) -> None:
        self.line(f"{self._paint('ERROR:', _c.red)} {message}")
        if problem_path:
            self.line(f"  Problem Path: {problem_path}")

    def no_files(self, extension: str) -> None:
        self.line(f"No files containing '{extension}' were found in the provided directory")

    def exiting(self) -> None:
        self.line("  ...Exiting")


# ---------------------------------------------------------------------------
# loading


class SourceFileLoader:
    """Executes a Python source file and returns the resulting module object."""

    _counter = 0

    def load(self, path: str):
        SourceFileLoader._counter += 1
        stem = re.sub(r"\W", "_", os.path.basename(path))
        name = f"_sanity_{SourceFileLoader._counter}_{stem}"
        spec = importlib.util.spec_from_file_location(name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load {path}")
        module = importlib.util.module_from_spec(spec)
        # dataclasses and pickling look the module up by name while it executes
        sys.modules[name] = module
        parent = os.path.dirname(os.path.abspath(path))
        before = set(sys.modules)
        sys.path.insert(0, parent)
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(name, None)
            raise
        finally:
            try:
                sys.path.remove(parent)
            except ValueError:
                pass
            self._forget_local_imports(parent, before)
        return module

    @staticmethod
    def _forget_local_imports(parent: str, before: set) -> None:
        """Drop modules the file pulled in from its own directory.

        Otherwise a same-named helper next to a later test file would
        resolve to the first one already cached in sys.modules.
        """
        prefix = parent.rstrip(os.sep) + os.sep
        for mod_name in set(sys.modules) - before:
            if mod_name.startswith("_sanity_"):
                continue
            mod_file = getattr(sys.modules.get(mod_name), "__file__", None)
            if mod_file and os.path.abspath(mod_file).startswith(prefix):
                LOG.debug("unloading %s (%s)", mod_name, mod_file)
                del sys.modules[mod_name]


def collect_tests(module: Any) -> Optional[List[TestCase]]:
    """Return the module's test collection, or None when it has no usable one."""
    raw = getattr(module, "tests", None)
    if not isinstance(raw, (list, tuple)):
        return None
    tests: List[TestCase] = []
    for item in raw:
        if isinstance(item, TestCase):
            tests.append(item)
            continue
        if isinstance(item, Mapping):
            description = item.get("description", item.get("desc"))
            procedure = item.get("procedure", item.get("proc"))
        else:
            # TestCase from a second copy of this module (e.g. run as __main__)
            description = getattr(item, "description", None)
            procedure = getattr(item, "procedure", None)
        if description is None or not callable(procedure):
            return None
        tests.append(TestCase(str(description), procedure))
    return tests


def load_configuration(config_path: Optional[str], loader=None) -> Configuration:
    if not config_path:
        return Configuration()
    if not os.path.isfile(config_path):
        raise ConfigurationError(f"The config file path provided is not valid: {config_path}")
    loader = loader or SourceFileLoader()
    try:
        module = loader.load(config_path)
    except Exception as e:
        raise ConfigurationError(f"Failed to load config file {config_path}: {e}") from e
    options = getattr(module, "config", None)
    if options is None:
        options = {k: getattr(module, k) for k in ("test_file_extension",) + Configuration.HOOKS if hasattr(module, k)}
    elif not isinstance(options, Mapping):
        raise ConfigurationError(f"'config' in {config_path} must be a mapping, got {type(options).__name__}")
    return Configuration.from_mapping(options)


# ---------------------------------------------------------------------------
# execution


class TestRunner:
    __test__ = False

    def __init__(self, reporter: Optional[Reporter] = None):
        self.reporter = reporter or Reporter()

    def _call_test_step(self, fn: Callable, context: ExecutionContext, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            LOG.debug("test step raised in %s", context.per_test.file, exc_info=True)
            context.record_fault(e)

    def _call_file_hook(self, name: str, file_path: str, tests: Sequence[TestCase], context: ExecutionContext) -> None:
        try:
            getattr(context.config, name)(file_path, tests, context)
        except Exception as e:
            LOG.error("%s hook failed for %s: %s", name, file_path, e)
            raise HookError(f"{name} hook failed for {file_path}: {e}") from e

    def run(self, file_path: str, tests: Sequence[TestCase], context: ExecutionContext) -> ExecutionContext:
        """Run every test of one file in declaration order.

        Exceptions from before_test, the procedure or after_test are caught
        here and counted as one failure of that test; the run moves on.
        """
        config = context.config
        self.reporter.file_header(file_path)

        self._call_file_hook("before_file", file_path, tests, context)
        for test in tests:
            context.test_prepare(file_path)
            self._call_test_step(config.before_test, context, file_path, test, context)
            self._call_test_step(test.procedure, context, context)
            self._call_test_step(config.after_test, context, file_path, test, context)

            self.reporter.test_result(test.description, context.test_passed, context.per_test.failure_locations)
            context.test_cleanup()
        self._call_file_hook("after_file", file_path, tests, context)
        return context


class Driver:
    def __init__(self, loader=None, reporter: Optional[Reporter] = None, strict_load: bool = False):
        self.loader = loader or SourceFileLoader()
        self.reporter = reporter or Reporter()
        self.strict_load = strict_load

    def _fatal(self, message: str, problem_path: Optional[str] = None) -> RunResult:
        self.reporter.error(message, problem_path)
        self.reporter.exiting()
        return RunResult(exit_code=EXIT_FATAL)

    def _load_tests(self, file_path: str, invalid: List[InvalidFile]) -> Optional[List[TestCase]]:
        try:
            module = self.loader.load(file_path)
        except Exception as e:
            if self.strict_load:
                raise TestLoadError(f"Failed to load {file_path}: {e}") from e
            LOG.warning("failed to load %s", file_path, exc_info=True)
            invalid.append(InvalidFile(file_path, f"{type(e).__name__}: {e}"))
            return None
        tests = collect_tests(module)
        if tests is None:
            invalid.append(InvalidFile(file_path, "no usable 'tests' collection"))
        return tests

    def run(self, root_directory: str, config_path: Optional[str] = None) -> RunResult:
        if not os.path.exists(root_directory):
            return self._fatal("The root path provided does not exist", root_directory)
        if not os.path.isdir(root_directory):
            return self._fatal("The root path provided is not a directory.", root_directory)

        try:
            config = load_configuration(config_path, self.loader)
        except ConfigurationError as e:
            LOG.debug("configuration error", exc_info=True)
            return self._fatal(str(e))

        try:
            files = scan(root_directory, config.test_file_extension)
        except FilesystemError as e:
            LOG.error("scan aborted: %s", e)
            return self._fatal(f"Failed to scan for test files: {e.strerror}", e.filename)

        context = ExecutionContext(config)
        result = RunResult()
        runner = TestRunner(self.reporter)

        aborted: Optional[SanityError] = None
        try:
            self._call_global_hook("before_all", context)
            if not files:
                self.reporter.no_files(config.test_file_extension)
            for file_path in files:
                tests = self._load_tests(file_path, result.invalid_files)
                if tests is None:
                    continue
                LOG.debug("running %d tests from %s", len(tests), file_path)
                result.files.append(file_path)
                runner.run(file_path, tests, context)
        except (HookError, TestLoadError) as e:
            aborted = e
            self.reporter.error(str(e))

        # after_all runs even when the run was cut short
        try:
            self._call_global_hook("after_all", context)
        except HookError as e:
            if aborted is None:
                aborted = e
                self.reporter.error(str(e))

        if not files and aborted is None:
            self.reporter.exiting()
            return result

        result.passed = context.passed
        result.failed = context.failed
        self.reporter.summary(context.passed, context.failed)
        self.reporter.invalid_files(result.invalid_files)
        if aborted is not None:
            self.reporter.exiting()
            result.exit_code = EXIT_FATAL
        else:
            result.exit_code = EXIT_OK if context.failed == 0 else EXIT_TESTS_FAILED
        return result

    def _call_global_hook(self, name: str, context: ExecutionContext) -> None:
        try:
            getattr(context.config, name)(context)
        except Exception as e:
            LOG.error("%s hook failed: %s", name, e)
            raise HookError(f"{name} hook failed: {e}") from e


# ---------------------------------------------------------------------------
# command line

USAGE_EPILOG = """\
sanity_runner walks root_dir recursively looking for test files. By default
test files contain '.test.py' in their name.

Test files should look like the following example:
  example.test.py
    tests = [
        {"desc": "Test Name", "proc": lambda env: env.expect(True)},
        # ... more tests here
    ]

config_file (optional) is a Python file defining a `config` dict, or
module-level names, with any of:
  test_file_extension, before_all(env), after_all(env),
  before_file(file, tests, env), after_file(file, tests, env),
  before_test(file, test, env), after_test(file, test, env)

Examples:
  python sanity_runner.py ./src/
  python sanity_runner.py ~/path/to/project ~/path/to/project/sanity_config.py
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sanity-runner",
        description="Run *.test.py files found under a directory",
        epilog=USAGE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("root_dir", help="directory searched recursively for test files")
    parser.add_argument("config_file", nargs="?", default=None, help="optional Python config file")
    parser.add_argument("--no-color", action="store_true", help="disable ANSI colors")
    parser.add_argument("--strict-load", action="store_true", help="abort the run when a test file fails to import")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")
    return parser


def main(argv: Optional[Iterable[str]] = None, stream: Optional[TextIO] = None) -> int:
    args = build_parser().parse_args(None if argv is None else list(argv))
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    color = not args.no_color and "NO_COLOR" not in os.environ
    driver = Driver(reporter=Reporter(stream=stream, color=color), strict_load=args.strict_load)
    try:
        result = driver.run(args.root_dir, args.config_file)
    except SanityError as e:
        LOG.exception("run aborted")
        driver.reporter.error(str(e))
        return EXIT_FATAL
    return result.exit_code


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
