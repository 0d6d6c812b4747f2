"""
Deposit log listener.

Polls the deposit contract for DepositedForAPI / DepositedForRPC logs,
decodes them into DepositEvents and hands them to the deposit processor.
The last fully handled block is stored in chain_cursors so a restart
resumes where the previous run stopped; redelivered logs are dropped by
the processor's (transaction_hash, log_index) record.

Usage:
    python -m entitlement_engine.jobs.deposit_listener [--once]
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from entitlement_engine.config.settings import EngineSettings, get_settings
from entitlement_engine.errors import ConfigurationError
from entitlement_engine.models.account import Track
from entitlement_engine.repositories.event_log import ChainCursorRepository
from entitlement_engine.schemas.events import DepositEvent

logger = logging.getLogger(__name__)

CURSOR_NAME = "deposit_contract"

# Keep eth_getLogs ranges within common node limits
MAX_BLOCK_RANGE = 2000

_WORD = 64


def _topic_tracks(settings: EngineSettings) -> Dict[str, Track]:
    if not settings.deposit_api_topic or not settings.deposit_rpc_topic:
        raise ConfigurationError("DEPOSIT_API_EVENT_TOPIC and DEPOSIT_RPC_EVENT_TOPIC must be set")
    return {
        settings.deposit_api_topic.lower(): Track.API,
        settings.deposit_rpc_topic.lower(): Track.RPC,
    }


def decode_deposit_log(log: Dict[str, Any], topic_tracks: Dict[str, Track]) -> Optional[DepositEvent]:
    """
    Decode one deposit log.

    Layout: topics[0] event signature, topics[1] indexed depositor address;
    data holds the uint256 amount and the uint8 tier code, one word each.

    Returns:
        DepositEvent, or None for logs of other events

    Raises:
        ValueError: If a deposit log is malformed
    """
    topics = [t.lower() for t in log.get("topics") or []]
    if not topics or topics[0] not in topic_tracks:
        return None
    if len(topics) < 2:
        raise ValueError("Deposit log without an indexed depositor")

    data = (log.get("data") or "0x")[2:]
    if len(data) < 2 * _WORD:
        raise ValueError(f"Deposit log data too short: {len(data) // 2} bytes")

    try:
        return DepositEvent(
            wallet_address="0x" + topics[1][-40:],
            amount_raw=int(data[:_WORD], 16),
            tier_code=int(data[_WORD:2 * _WORD], 16),
            track=topic_tracks[topics[0]],
            transaction_hash=log["transactionHash"],
            log_index=int(log.get("logIndex") or "0x0", 16),
            block_number=int(log.get("blockNumber") or "0x0", 16),
        )
    except (KeyError, ValidationError) as e:
        raise ValueError(f"Malformed deposit log: {e}") from e


class DepositLogListener:
    """Cursor-driven poller over eth_getLogs."""

    def __init__(self, db_session, chain, processor, settings: Optional[EngineSettings] = None):
        """
        Args:
            db_session: Database session (cursor storage)
            chain: ChainRPCClient
            processor: DepositEventProcessor
            settings: Engine settings (defaults to the process settings)
        """
        self.chain = chain
        self.processor = processor
        self.settings = settings or get_settings()
        self.cursors = ChainCursorRepository(db_session)
        self.topic_tracks = _topic_tracks(self.settings)

        if not self.settings.deposit_contract_address:
            raise ConfigurationError("DEPOSIT_CONTRACT_ADDRESS must be set")

    async def poll_once(self) -> Dict[str, int]:
        """
        Scan the next block range.

        The cursor only advances past a block once every deposit in it has
        been applied or permanently rejected; a retryable failure stops the
        scan at that block.
        """
        stats = {"logs": 0, "applied": 0, "skipped": 0, "failed": 0}

        last = self.cursors.get_cursor(CURSOR_NAME, default=self.settings.deposit_start_block - 1)
        head = await self.chain.block_number()
        from_block = last + 1
        if from_block > head:
            return stats
        to_block = min(head, from_block + MAX_BLOCK_RANGE - 1)

        logs: List[Dict[str, Any]] = await self.chain.get_logs(
            self.settings.deposit_contract_address,
            [list(self.topic_tracks.keys())],
            from_block,
            to_block,
        )
        logs.sort(key=lambda l: (int(l.get("blockNumber", "0x0"), 16), int(l.get("logIndex", "0x0"), 16)))

        for log in logs:
            stats["logs"] += 1
            try:
                event = decode_deposit_log(log, self.topic_tracks)
            except ValueError as e:
                logger.error("Undecodable deposit log", extra={
                    "transaction_hash": log.get("transactionHash"),
                    "error": str(e),
                })
                stats["failed"] += 1
                continue
            if event is None:
                continue

            result = await self.processor.process(event)
            if result.processed:
                stats["applied"] += 1
            elif result.retryable:
                stats["failed"] += 1
                self.cursors.set_cursor(CURSOR_NAME, event.block_number - 1)
                logger.warning("Deposit left for retry, cursor held", extra={
                    "transaction_hash": event.transaction_hash,
                    "block_number": event.block_number,
                    "error": result.error,
                })
                return stats
            else:
                stats["skipped"] += 1

        self.cursors.set_cursor(CURSOR_NAME, to_block)
        logger.info("Deposit logs scanned", extra={"from_block": from_block, "to_block": to_block, **stats})
        return stats

    async def run_forever(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error("Deposit poll failed", extra={"error": str(e)}, exc_info=True)
            await asyncio.sleep(self.settings.deposit_poll_interval_seconds)


async def run_listener(once: bool = False) -> None:
    """Build collaborators from the environment and start polling."""
    from entitlement_engine.database.session import get_session_factory
    from entitlement_engine.integrations.chain.rpc_client import ChainRPCClient
    from entitlement_engine.services.account_provisioning import AccountProvisioner
    from entitlement_engine.services.deposit_processor import DepositEventProcessor
    from entitlement_engine.services.price_oracle import PriceOracle
    from entitlement_engine.services.quota_gateway import build_quota_gateway

    settings = get_settings()
    if not settings.chain_rpc_url:
        raise ConfigurationError("CHAIN_RPC_URL must be set")

    session = get_session_factory()()
    try:
        async with ChainRPCClient(settings.chain_rpc_url, settings.chain_rpc_timeout_seconds) as chain:
            gateway = build_quota_gateway(session, settings)
            processor = DepositEventProcessor(
                session,
                gateway=gateway,
                price_oracle=PriceOracle(chain, settings),
                chain=chain,
                provisioner=AccountProvisioner(session, gateway, settings=settings),
                settings=settings,
            )
            listener = DepositLogListener(session, chain, processor, settings)
            if once:
                await listener.poll_once()
            else:
                await listener.run_forever()
    finally:
        session.close()


def main(argv=None):
    """Entry point for the deposit listener."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    parser = argparse.ArgumentParser(description="Poll the deposit contract for deposits")
    parser.add_argument("--once", action="store_true", help="Scan one block range and exit")
    args = parser.parse_args(argv)

    try:
        asyncio.run(run_listener(once=args.once))
        sys.exit(0)
    except Exception as e:
        print(f"Deposit listener failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
