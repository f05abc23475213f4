"""
Bridge supervisor: owns the event loop side of the bridge.

Inbound transport events arrive on a single queue. Requests and outbound
emissions for a topic go through that topic's own queue and are handled by
one worker task, so a topic sees its items strictly in order while different
topics run concurrently.

When a topic is lost its worker and any queued items are cancelled before
the session is resumed, so a response computed for the old connection is
never sent after the reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import Any

from loguru import logger

from neuraiwc.accounts import AccountRegistry, DerivedAccount, derive_accounts
from neuraiwc.backends.base import ChainBackend
from neuraiwc.backends.neurai_rpc import NeuraiRpcBackend
from neuraiwc.broadcast import BroadcastService
from neuraiwc.chain_identity import parse_chain_id
from neuraiwc.config import BridgeSettings
from neuraiwc.constants import EVENT_ACCOUNTS_CHANGED, EVENT_CHAIN_CHANGED
from neuraiwc.dispatcher import RequestDispatcher
from neuraiwc.errors import BridgeError, TransportError, UnsupportedChain
from neuraiwc.ledger import UtxoLedgerView
from neuraiwc.models import Session
from neuraiwc.negotiator import Accepted, SessionNegotiator
from neuraiwc.psbt_pipeline import PsbtPipeline
from neuraiwc.retry import backoff_delay
from neuraiwc.session_store import SessionStore
from neuraiwc.transport import (
    SessionDelete,
    SessionExpire,
    SessionProposal,
    SessionRequest,
    TopicLost,
    Transport,
    TransportEvent,
)
from neuraiwc.wallet.custody import Custody

WorkItem = Callable[[], Awaitable[None]]


class BridgeSupervisor:
    def __init__(
        self,
        transport: Transport,
        dispatcher: RequestDispatcher,
        negotiator: SessionNegotiator,
        sessions: SessionStore,
        accounts: AccountRegistry,
        backend: ChainBackend,
        *,
        resume_max_attempts: int = 5,
        resume_base_delay: float = 1.0,
        session_ttl: float = 7 * 24 * 3600,
    ):
        self.transport = transport
        self.dispatcher = dispatcher
        self.negotiator = negotiator
        self.sessions = sessions
        self.accounts = accounts
        self.backend = backend
        self.resume_max_attempts = resume_max_attempts
        self.resume_base_delay = resume_base_delay
        self.session_ttl = session_ttl

        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self.running = False
        self._main_task: asyncio.Task | None = None
        self._topic_queues: dict[str, asyncio.Queue[WorkItem]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._resume_tasks: dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        """Resume persisted sessions and start consuming events."""
        logger.info("Starting bridge supervisor...")
        now = datetime.now(UTC)
        for session in self.sessions.load():
            if session.is_expired(now):
                logger.info(f"Dropping expired session {session.topic}")
                self.sessions.remove(session.topic)
                continue
            self._start_resume(session)

        self.running = True
        self._main_task = asyncio.create_task(self._run())
        logger.info(f"Bridge supervisor started with {len(self.sessions)} session(s)")

    async def stop(self) -> None:
        logger.info("Stopping bridge supervisor...")
        self.running = False

        tasks = [*self._workers.values(), *self._resume_tasks.values()]
        if self._main_task is not None:
            tasks.append(self._main_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._workers.clear()
        self._topic_queues.clear()
        self._resume_tasks.clear()
        self._main_task = None

        await self.backend.close()
        logger.info("Bridge supervisor stopped")

    def submit(self, event: TransportEvent) -> None:
        self.events.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every queued event and topic item has been processed."""
        await self.events.join()
        if self._resume_tasks:
            await asyncio.gather(*list(self._resume_tasks.values()), return_exceptions=True)
        for queue in list(self._topic_queues.values()):
            await queue.join()

    async def _run(self) -> None:
        while self.running:
            event = await self.events.get()
            try:
                await self.process_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Failed to process {type(event).__name__}: {e}")
            finally:
                self.events.task_done()

    async def process_event(self, event: TransportEvent) -> None:
        if isinstance(event, SessionProposal):
            await self._on_proposal(event)
        elif isinstance(event, SessionRequest):
            await self._on_request(event)
        elif isinstance(event, TopicLost):
            await self._on_topic_lost(event.topic)
        elif isinstance(event, (SessionDelete, SessionExpire)):
            await self._end_session(event.topic, type(event).__name__)
        else:
            logger.warning(f"Ignoring unknown event {event!r}")

    async def _on_proposal(self, proposal: SessionProposal) -> None:
        result = self.negotiator.evaluate(
            proposal.required_namespaces, proposal.optional_namespaces
        )
        if not isinstance(result, Accepted):
            await self.transport.reject(proposal, result.error)
            return

        try:
            topic = await self.transport.approve(proposal, result.namespaces)
        except TransportError as e:
            logger.error(f"Failed to approve proposal {proposal.id}: {e}")
            return

        namespace = next(iter(result.namespaces.values()))
        session = Session(
            topic=topic,
            namespaces=result.namespaces,
            peer=proposal.peer,
            expiry=proposal.expiry or datetime.now(UTC) + timedelta(seconds=self.session_ttl),
            active_chain=namespace.chains[0] if namespace.chains else None,
        )
        self.sessions.put(session)
        logger.info(f"Session {topic} approved for {proposal.peer.name or 'unnamed dApp'}")

    async def _on_request(self, request: SessionRequest) -> None:
        if request.topic not in self.sessions:
            response = await self.dispatcher.handle(
                request.topic, request.method, request.params, request.id, request.chain_id
            )
            await self._respond(request.topic, response)
            return

        async def process() -> None:
            response = await self.dispatcher.handle(
                request.topic, request.method, request.params, request.id, request.chain_id
            )
            await self.transport.respond(request.topic, response)

        self._enqueue(request.topic, process)

    async def _respond(self, topic: str, response: Any) -> None:
        try:
            await self.transport.respond(topic, response)
        except TransportError as e:
            logger.warning(f"Could not respond on {topic}: {e}")

    def _enqueue(self, topic: str, item: WorkItem) -> None:
        queue = self._topic_queues.get(topic)
        if queue is None:
            queue = asyncio.Queue()
            self._topic_queues[topic] = queue
            self._workers[topic] = asyncio.create_task(self._topic_worker(topic, queue))
        queue.put_nowait(item)

    async def _topic_worker(self, topic: str, queue: asyncio.Queue[WorkItem]) -> None:
        while True:
            item = await queue.get()
            try:
                await item()
            except asyncio.CancelledError:
                raise
            except TransportError as e:
                logger.warning(f"Transport failure on {topic}: {e}")
                self.submit(TopicLost(topic))
            except Exception as e:
                logger.error(f"Error processing item for {topic}: {e}")
            finally:
                queue.task_done()

    async def _cancel_topic(self, topic: str) -> None:
        """Cancel the topic worker, discarding in-flight and queued items."""
        self._topic_queues.pop(topic, None)
        worker = self._workers.pop(topic, None)
        if worker is None:
            return
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker
        logger.debug(f"Cancelled pending work for {topic}")

    async def _on_topic_lost(self, topic: str) -> None:
        logger.warning(f"Topic {topic} lost, resuming session")
        await self._cancel_topic(topic)
        session = self.sessions.get(topic)
        if session is None or topic in self._resume_tasks:
            return
        self._start_resume(session)

    def _start_resume(self, session: Session) -> None:
        task = asyncio.create_task(self._resume(session))
        self._resume_tasks[session.topic] = task
        task.add_done_callback(lambda _: self._resume_tasks.pop(session.topic, None))

    async def _resume(self, session: Session) -> Session | None:
        for attempt in range(self.resume_max_attempts):
            try:
                resumed = await self.transport.resume(session)
            except TransportError as e:
                if attempt < self.resume_max_attempts - 1:
                    delay = backoff_delay(attempt, self.resume_base_delay)
                    logger.warning(
                        f"Resume of {session.topic} failed: {e}, retrying in {delay:.2f}s "
                        f"(attempt {attempt + 1}/{self.resume_max_attempts})"
                    )
                    await asyncio.sleep(delay)
                continue

            if resumed.topic != session.topic:
                logger.info(f"Session {session.topic} resumed as {resumed.topic}")
            else:
                logger.info(f"Session {session.topic} resumed")
            self.sessions.rekey(session.topic, resumed)
            if resumed.topic != session.topic:
                # Work queued on the old topic while resuming has nowhere to go
                await self._cancel_topic(session.topic)
            return resumed

        logger.warning(
            f"Could not resume {session.topic} after {self.resume_max_attempts} attempts, "
            "expiring session"
        )
        self.sessions.remove(session.topic)
        return None

    async def _end_session(self, topic: str, reason: str) -> None:
        await self._cancel_topic(topic)
        resume_task = self._resume_tasks.pop(topic, None)
        if resume_task is not None:
            resume_task.cancel()
        if self.sessions.remove(topic) is not None:
            logger.info(f"Session {topic} ended ({reason})")

    def update_accounts(self, accounts: list[DerivedAccount]) -> None:
        """
        Replace the wallet accounts and notify every affected session.

        Each session's namespace is updated when its emission runs, in order
        with that topic's pending requests.
        """
        self.accounts.replace(accounts)

        for session in self.sessions.all():
            self._enqueue(session.topic, partial(self._emit_accounts, session.topic))

    async def _emit_accounts(self, topic: str) -> None:
        """Bring a session's accounts in line with the registry as it is now."""
        current = self.sessions.get(topic)
        if current is None:
            return
        chains = current.chains
        account_ids = [a.account_id for a in self.accounts if a.account_id.chain_id in chains]
        if [str(a) for a in account_ids] == current.namespace.accounts:
            return

        updated = current.with_accounts(account_ids)
        self.sessions.put(updated)
        await self.transport.update(topic, updated.namespaces)
        chain = updated.active_chain or updated.namespace.chains[0]
        await self.transport.emit(
            topic, EVENT_ACCOUNTS_CHANGED, [a.address for a in account_ids], chain
        )

    def set_active_chain(self, topic: str, chain_id: str) -> None:
        session = self.sessions.get(topic)
        if session is None:
            raise BridgeError(f"No session for topic {topic}")
        chain = str(parse_chain_id(chain_id))
        if chain not in session.namespace.chains:
            raise UnsupportedChain(f"Chain {chain_id} was not granted to session {topic}")

        async def emit() -> None:
            current = self.sessions.get(topic)
            if current is None:
                return
            self.sessions.put(current.model_copy(update={"active_chain": chain}))
            await self.transport.emit(topic, EVENT_CHAIN_CHANGED, chain, chain)

        self._enqueue(topic, emit)


async def create_bridge(
    settings: BridgeSettings,
    transport: Transport,
    custody: Custody,
    backend: ChainBackend | None = None,
) -> BridgeSupervisor:
    """Wire up every bridge component from settings."""
    identity = settings.chain_identity()
    if backend is None:
        backend = NeuraiRpcBackend(
            rpc_url=settings.effective_rpc_url,
            rpc_user=settings.rpc_user,
            rpc_password=settings.rpc_password,
            timeout=settings.rpc_timeout,
        )

    accounts = AccountRegistry(await derive_accounts(custody, identity, settings.account_count))
    ledger = UtxoLedgerView(
        backend,
        identity,
        max_age=settings.utxo_max_age,
        min_confirmations=settings.min_confirmations,
        policy=settings.coin_selection,
        fetch_timeout=settings.rpc_timeout,
        max_attempts=settings.fetch_max_attempts,
        base_delay=settings.retry_base_delay,
    )
    pipeline = PsbtPipeline(ledger, custody, accounts, custody_timeout=settings.custody_timeout)
    broadcaster = BroadcastService(
        backend,
        max_attempts=settings.broadcast_max_attempts,
        base_delay=settings.retry_base_delay,
        timeout=settings.rpc_timeout,
    )
    sessions = SessionStore(settings.session_store_path)
    dispatcher = RequestDispatcher(
        identity,
        sessions,
        accounts,
        ledger,
        pipeline,
        broadcaster,
        custody,
        request_timeout=settings.request_timeout,
        custody_timeout=settings.custody_timeout,
    )
    negotiator = SessionNegotiator(identity, accounts.account_ids)

    return BridgeSupervisor(
        transport,
        dispatcher,
        negotiator,
        sessions,
        accounts,
        backend,
        resume_max_attempts=settings.resume_max_attempts,
        resume_base_delay=settings.resume_base_delay,
        session_ttl=settings.session_ttl,
    )
