"""
src/songforge/extension.py

Fragment extension engine.

A provider generation returns a batch of short fragments. Each fragment seeds
one ExtensionChain which runs:

  GENERATING -> POLLING -> ANALYZING -> DECIDING -> EXTENDING -> (POLLING ...)
             -> CONCLUDING -> DONE

The policy (songforge.policy) makes every decision; the backend (the
provider) performs the remote calls. Only rendered audio, through the
AudioAnalyzer, feeds back into the decisions.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from songforge import waits
from songforge.config import ExtensionConfig
from songforge.errors import Cancelled, PartialBatchError, ProviderError, TotalBatchError
from songforge.interfaces import AudioAnalyzer
from songforge.music import ExtensionChain, Fragment, GenerationTask, Song
from songforge.policy import ExtendRequest, ExtensionPolicy

log = logging.getLogger(__name__)


class ExtensionState(str, enum.Enum):
    GENERATING = "generating"
    POLLING = "polling"
    ANALYZING = "analyzing"
    DECIDING = "deciding"
    EXTENDING = "extending"
    CONCLUDING = "concluding"
    DONE = "done"


class ExtensionBackend(Protocol):
    def create(self, req: ExtendRequest, cancel: Optional[threading.Event]) -> List[str]:
        """Start a generation and return the ids of the fragments it produces."""
        ...

    def fetch(self, ids: Sequence[str], cancel: Optional[threading.Event]) -> List[Fragment]:
        ...

    def conclude(self, chain: ExtensionChain, cancel: Optional[threading.Event]) -> List[Song]:
        ...


class ExtensionEngine:
    def __init__(
        self,
        backend: ExtensionBackend,
        policy: ExtensionPolicy,
        *,
        analyzer: Optional[AudioAnalyzer] = None,
        config: Optional[ExtensionConfig] = None,
        sleeper: waits.Sleeper = waits.sleep,
        clock: Callable[[], float] = time.monotonic,
        name: str = "engine",
    ) -> None:
        self.backend = backend
        self.policy = policy
        self.analyzer = analyzer
        self.config = config or policy.config
        self.sleeper = sleeper
        self.clock = clock
        self.name = name

    # ------------------------------------------------------------------
    # generation
    # ------------------------------------------------------------------

    def generate(self, task: GenerationTask, cancel: Optional[threading.Event] = None) -> List[List[Song]]:
        """Run the first generation for `task` and extend every fragment it yields."""
        fragments = self._generate(self.policy.initial_request(task), cancel)
        return self.run(task, fragments, cancel)

    def run(
        self,
        task: GenerationTask,
        fragments: Sequence[Fragment],
        cancel: Optional[threading.Event] = None,
    ) -> List[List[Song]]:
        """
        Extend each initial fragment into its own chain.

        Chains run one at a time, or all at once when config.parallel is set.
        A failing chain is logged and dropped; the call fails only when no
        chain completes.
        """
        if not fragments:
            raise ProviderError(f"{self.name}: no fragments to extend")

        workers = len(fragments) if self.config.parallel else 1
        results: Dict[int, List[Song]] = {}
        cancelled = False

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"{self.name}-chain") as pool:
            futures = [pool.submit(self.extend, task, f, cancel) for f in fragments]
            for i, fut in enumerate(futures):
                try:
                    songs = fut.result()
                except Cancelled:
                    cancelled = True
                    continue
                except Exception as e:
                    log.error("%s: chain %s failed: %s", self.name, fragments[i].id, e)
                    continue
                if songs:
                    results[i] = songs

        if cancelled:
            raise Cancelled(f"{self.name}: cancelled")
        if not results:
            raise ProviderError(f"{self.name}: no songs generated")
        return [results[i] for i in sorted(results)]

    def extend(
        self,
        task: GenerationTask,
        first: Fragment,
        cancel: Optional[threading.Event] = None,
    ) -> List[Song]:
        policy = self.policy
        chain: Optional[ExtensionChain] = None
        candidates: List[Fragment] = [first]

        while True:
            waits.check(cancel)
            analyzed = [self.analyze(c) for c in candidates]
            if chain is None:
                chain = policy.new_chain(task, analyzed[0])
            self._enter(chain, ExtensionState.ANALYZING)
            chain.candidates = analyzed

            self._enter(chain, ExtensionState.DECIDING)
            chosen = policy.select(chain, analyzed)
            decision = policy.decide(chain, chosen)
            chain.fragments.append(chosen)
            log.info(
                "%s: %s step=%d duration=%.1f total=%.1f -> %s (%s)",
                self.name, chosen.id, chain.extensions, chosen.duration,
                decision.total, decision.action.value, decision.reason,
            )
            if not decision.extend:
                break

            self._enter(chain, ExtensionState.EXTENDING)
            policy.advance(chain, chosen, decision)
            req = policy.next_request(chain, chosen)
            candidates = self._generate(req, cancel, chain)

        intro = policy.intro_request(chain, chosen)
        if intro is not None:
            self._enter(chain, ExtensionState.EXTENDING)
            log.info("%s: adding intro before %s", self.name, chosen.id)
            analyzed = [self.analyze(c) for c in self._generate(intro, cancel, chain)]
            chain.candidates = analyzed
            chain.fragments.append(policy.select(chain, analyzed))

        self._enter(chain, ExtensionState.CONCLUDING)
        songs = self.backend.conclude(chain, cancel)
        self._enter(chain, ExtensionState.DONE)
        return songs

    # ------------------------------------------------------------------
    # polling / analysis
    # ------------------------------------------------------------------

    def poll(self, ids: Sequence[str], cancel: Optional[threading.Event] = None) -> List[Fragment]:
        """
        Wait until every id is complete or errored.

        Returns the completed fragments in request order. Errored fragments are
        logged as a PartialBatchError; if none completed, TotalBatchError.
        """
        ids = list(ids)
        deadline = self.clock() + self.config.poll_timeout
        while True:
            self.sleeper(cancel, self.config.poll_interval)
            got = {f.id: f for f in self.backend.fetch(ids, cancel)}
            pending = [i for i in ids if i not in got or not got[i].done]
            if not pending:
                break
            if self.clock() >= deadline:
                raise ProviderError(
                    f"{self.name}: timed out waiting for fragments: {', '.join(pending)}"
                )

        ok = [got[i] for i in ids if not got[i].failed]
        failed = [{"id": got[i].id, "error": got[i].error} for i in ids if got[i].failed]
        if not ok:
            raise TotalBatchError(f"{self.name}: all fragments failed: {failed}", failed=failed)
        if failed:
            log.warning("%s", PartialBatchError(f"{self.name}: some fragments failed: {failed}", failed=failed))
        return ok

    def analyze(self, fragment: Fragment) -> Fragment:
        if self.analyzer is None or not fragment.audio:
            return fragment
        silences = tuple(self.analyzer.silences(fragment.audio))
        fade_out = bool(self.analyzer.has_fade_out(fragment.audio))
        return replace(fragment, silences=silences, fade_out=fade_out)

    def _generate(
        self,
        req: ExtendRequest,
        cancel: Optional[threading.Event],
        chain: Optional[ExtensionChain] = None,
    ) -> List[Fragment]:
        if chain is not None:
            self._enter(chain, ExtensionState.GENERATING)
        ids = self.backend.create(req, cancel)
        if not ids:
            raise ProviderError(f"{self.name}: generation returned no fragments")
        if chain is not None:
            self._enter(chain, ExtensionState.POLLING)
        return self.poll(ids, cancel)

    def _enter(self, chain: ExtensionChain, state: ExtensionState) -> None:
        chain.state = state.value
        log.debug("%s: chain %s -> %s", self.name, chain.fragments[0].id if chain.fragments else "?", state.value)
