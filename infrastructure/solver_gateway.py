"""
SOLVER GATEWAY
The only component that talks to the clingo answer set solver.

Features: Program Store with categories, Solve Result Cache, Solver Functions.

A program is referenced either by its key or by one of its categories. A
solve call combines every referenced program with the main program text,
grounds and solves it, and returns one text line of shown atoms per answer.

Atoms in a line are sorted by clingo's symbol order, not kept in the order
the solver reported them, so equal programs always give equal lines. Links,
notifications and field updates therefore come out in that sorted order.
"""
import hashlib
import html
import logging
import textwrap
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from clingo.control import Control
from clingo.core import MessageCode
from clingo.symbol import Number, String, Symbol, SymbolType

from core.ontology import InternalConsistencyError

logger = logging.getLogger("SolverGateway")

MAIN_PROGRAM_KEY = "query"


# =============================================================================
# ERRORS
# =============================================================================

class SolverError(InternalConsistencyError):
    """Raised when the solver cannot produce answers."""
    retryable = False

    def __init__(self, message: str, errors: Sequence[str] = (), warnings: Sequence[str] = ()):
        self.errors = list(errors)
        self.warnings = list(warnings)
        super().__init__(message)


class SolverParseError(SolverError):
    """A program text could not be parsed. Points at a compiler/template bug."""

    def __init__(self, program_key: str, errors: Sequence[str], warnings: Sequence[str] = ()):
        self.program_key = program_key
        detail = "; ".join(errors)
        super().__init__(
            f"Parsing failed in program '{program_key}'" + (f": {detail}" if detail else ""),
            errors,
            warnings,
        )


class SolverRuntimeError(SolverError):
    """Grounding or solving failed. The caller may retry."""
    retryable = True


class SolverTimeoutError(SolverRuntimeError):
    """Solving did not finish within the configured timeout."""


# =============================================================================
# PROGRAM STORE
# =============================================================================

@dataclass(frozen=True)
class StoredProgram:
    key: str
    content: str
    categories: Tuple[str, ...]
    digest: str


class ProgramStore:
    """
    Process-wide store of compiled programs.

    Thread-safe: solves run in worker threads while the event loop keeps
    registering programs.
    """

    def __init__(self):
        self._programs: Dict[str, StoredProgram] = {}
        self._lock = threading.Lock()

    def add(self, key: str, content: str, categories: Iterable[str] = ()) -> bool:
        """Store a program. Returns False when an identical program was already stored."""
        categories = tuple(sorted(set(categories)))
        digest = hashlib.sha256(content.encode()).hexdigest()
        with self._lock:
            existing = self._programs.get(key)
            if existing and existing.digest == digest and existing.categories == categories:
                return False
            self._programs[key] = StoredProgram(key, content, categories, digest)
        return True

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._programs.pop(key, None) is not None

    def remove_by_category(self, category: str) -> int:
        with self._lock:
            keys = [k for k, p in self._programs.items() if category in p.categories]
            for key in keys:
                del self._programs[key]
        return len(keys)

    def clear(self):
        with self._lock:
            self._programs.clear()

    def get(self, key: str) -> Optional[StoredProgram]:
        with self._lock:
            return self._programs.get(key)

    def keys(self, category: Optional[str] = None) -> List[str]:
        with self._lock:
            return sorted(
                k for k, p in self._programs.items()
                if category is None or category in p.categories
            )

    def resolve(self, references: Iterable[str]) -> List[StoredProgram]:
        """Programs whose key or one of whose categories is referenced, ordered by key."""
        references = set(references)
        with self._lock:
            selected = [
                p for k, p in self._programs.items()
                if k in references or references.intersection(p.categories)
            ]
        return sorted(selected, key=lambda p: p.key)


# =============================================================================
# SOLVE RESULT CACHE
# =============================================================================

class SolveResultCache:
    """Small LRU cache of answers keyed by the hash of the exact program set."""

    def __init__(self, capacity: int = 64):
        self.capacity = capacity
        self._entries: "OrderedDict[str, Tuple[List[str], Optional[float]]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, digest: str) -> Optional[List[str]]:
        with self._lock:
            entry = self._entries.get(digest)
            if entry is None:
                return None
            answers, expires_at = entry
            if expires_at is not None and time.time() >= expires_at:
                del self._entries[digest]
                return None
            self._entries.move_to_end(digest)
            return list(answers)

    def put(self, digest: str, answers: List[str], expires_at: Optional[float] = None):
        if self.capacity <= 0:
            return
        with self._lock:
            self._entries[digest] = (list(answers), expires_at)
            self._entries.move_to_end(digest)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# SOLVER FUNCTIONS (@concatenate, @daysSince, @today, @wrap)
# =============================================================================

WRAP_WIDTH = 27


def _symbol_text(symbol: Symbol) -> str:
    if symbol.type == SymbolType.String:
        return symbol.string
    if symbol.type == SymbolType.Number:
        return str(symbol.number)
    if symbol.type == SymbolType.Function:
        return str(symbol)
    return ""


def next_local_midnight() -> float:
    tomorrow = date.today() + timedelta(days=1)
    return datetime.combine(tomorrow, datetime.min.time()).timestamp()


class SolverFunctions:
    """
    Functions callable from programs as @name(...). One instance per solve,
    so `date_used` tells whether the answers depend on the current date.
    """

    def __init__(self):
        self.date_used = False

    def concatenate(self, *args: Symbol) -> Symbol:
        return String("".join(_symbol_text(a) for a in args))

    def daysSince(self, value: Symbol) -> Symbol:
        self.date_used = True
        if value.type != SymbolType.String:
            return Number(0)
        try:
            then = datetime.fromisoformat(value.string.replace("Z", "+00:00"))
        except ValueError:
            return Number(0)
        now = datetime.now(then.tzinfo)
        return Number(int((now - then).total_seconds() / 86400))

    def today(self) -> Symbol:
        self.date_used = True
        return String(date.today().isoformat())

    def wrap(self, value: Symbol) -> Symbol:
        text = "" if value.type == SymbolType.Number else _symbol_text(value)
        lines = textwrap.wrap(text, WRAP_WIDTH)
        return String("<br/>".join(html.escape(line) for line in lines))


# =============================================================================
# GATEWAY
# =============================================================================

@dataclass
class SolveResult:
    answers: List[str]
    execution_time: float
    cached: bool = False
    warnings: List[str] = field(default_factory=list)


def _is_error(code: MessageCode, message: str) -> bool:
    return code == MessageCode.RuntimeError or ": error:" in message


class SolverGateway:
    """
    Synchronous facade over clingo.

    Callers running inside an event loop should call `solve` through
    `asyncio.to_thread`; the gateway itself does no scheduling.
    """

    def __init__(
        self,
        store: Optional[ProgramStore] = None,
        timeout_seconds: Optional[float] = None,
        cache_entries: int = 64,
        message_limit: int = 20
    ):
        self.store = store or ProgramStore()
        self.timeout_seconds = timeout_seconds
        self.message_limit = message_limit
        self.cache = SolveResultCache(cache_entries)

    # =========================================================================
    # PROGRAM MANAGEMENT
    # =========================================================================

    def set_program(self, key: str, text: str, categories: Optional[Sequence[str]] = None) -> bool:
        changed = self.store.add(key, text, categories or ())
        if changed:
            logger.debug(f"Program set: {key}")
        return changed

    def remove_program(self, key: str) -> bool:
        removed = self.store.remove(key)
        if not removed:
            logger.warning(f"Tried to remove program that does not exist: {key}")
        return removed

    def remove_programs_by_category(self, category: str) -> int:
        return self.store.remove_by_category(category)

    def remove_all_programs(self):
        self.store.clear()
        self.cache.clear()

    def get_program(self, main_program: str, categories: Sequence[str] = ()) -> str:
        """Full program text as the solver would see it (debugging aid)."""
        parts = [f"% {p.key}\n{p.content}" for p in self.store.resolve(categories)]
        parts.append(f"% {MAIN_PROGRAM_KEY}\n{main_program}")
        return "\n".join(parts)

    # =========================================================================
    # SOLVING
    # =========================================================================

    @staticmethod
    def _digest(main_program: str, programs: List[StoredProgram]) -> str:
        h = hashlib.sha256()
        for program in programs:
            h.update(program.key.encode())
            h.update(program.digest.encode())
        h.update(main_program.encode())
        return h.hexdigest()

    def solve(self, main_program: str, categories: Sequence[str] = ()) -> SolveResult:
        """
        Solve the main program together with every referenced program.

        Returns:
            SolveResult with one answer line per answer set (possibly none)

        Raises:
            SolverParseError: a program text is malformed
            SolverRuntimeError: grounding or solving failed
            SolverTimeoutError: solving exceeded the timeout
        """
        programs = self.store.resolve(categories)
        digest = self._digest(main_program, programs)
        cached = self.cache.get(digest)
        if cached is not None:
            logger.debug(f"Solve cache hit ({len(programs)} programs)")
            return SolveResult(answers=cached, execution_time=0.0, cached=True)

        started = time.perf_counter()
        messages: List[Tuple[MessageCode, str]] = []

        def on_message(code: MessageCode, message: str):
            messages.append((code, message))

        def split_messages() -> Tuple[List[str], List[str]]:
            errors = [m for c, m in messages if _is_error(c, m)]
            warnings = [m for c, m in messages if not _is_error(c, m)]
            return errors, warnings

        ctl = Control(["0"], logger=on_message, message_limit=self.message_limit)

        sources = [(p.key, p.content) for p in programs] + [(MAIN_PROGRAM_KEY, main_program)]
        for key, text in sources:
            try:
                ctl.add("base", [], text)
            except RuntimeError as e:
                errors, warnings = split_messages()
                logger.error(f"Parsing failed in '{key}': {errors or e}")
                raise SolverParseError(key, errors or [str(e)], warnings) from e

        functions = SolverFunctions()
        try:
            ctl.ground([("base", [])], context=functions)
        except RuntimeError as e:
            errors, warnings = split_messages()
            logger.error(f"Grounding failed: {errors or e}")
            raise SolverRuntimeError(f"Grounding failed: {e}", errors, warnings) from e

        answers: List[str] = []

        def on_model(model):
            answers.append(" ".join(str(s) for s in sorted(model.symbols(shown=True))))

        try:
            with ctl.solve(on_model=on_model, async_=True) as handle:
                if not handle.wait(self.timeout_seconds):
                    handle.cancel()
                    raise SolverTimeoutError(
                        f"Solving did not finish within {self.timeout_seconds}s"
                    )
                handle.get()
        except RuntimeError as e:
            errors, warnings = split_messages()
            logger.error(f"Solving failed: {errors or e}")
            raise SolverRuntimeError(f"Solving failed: {e}", errors, warnings) from e

        elapsed = time.perf_counter() - started
        _, warnings = split_messages()
        expires_at = next_local_midnight() if functions.date_used else None
        self.cache.put(digest, answers, expires_at)
        logger.debug(f"Solved {len(programs)} programs in {elapsed * 1000:.1f}ms, {len(answers)} answers")
        return SolveResult(answers=answers, execution_time=elapsed, warnings=warnings)
