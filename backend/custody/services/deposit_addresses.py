from typing import Optional
from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from custody.config import ChainConfig, settings, get_chain_configs
from custody.database import AsyncSessionLocal
from custody.exceptions import AllocationConflict, InvalidKeyFormat, NotFound, UnsupportedChain
from custody.models.counter import Counter
from custody.models.deposit import DepositAddress, DepositAddressStatus
from custody.services.address_derivation import derive_address


class CounterAllocator:
    """Monotonic index allocator using a conditional write on the counter value."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal, max_retries: Optional[int] = None):
        self.session_factory = session_factory
        self.max_retries = max_retries or settings.OPTIMISTIC_MAX_RETRIES

    async def allocate(self, counter_id: str) -> int:
        for attempt in range(self.max_retries):
            async with self.session_factory() as db:
                try:
                    current = await db.scalar(
                        select(Counter.value).where(Counter.id == counter_id)
                    )
                    if current is None:
                        db.add(Counter(id=counter_id, value=0))
                        await db.commit()
                        return 0

                    result = await db.execute(
                        update(Counter)
                        .where(Counter.id == counter_id, Counter.value == current)
                        .values(value=current + 1)
                    )
                    if result.rowcount == 1:
                        await db.commit()
                        return current + 1
                    await db.rollback()
                except IntegrityError:
                    # Another allocator created the counter first
                    await db.rollback()
            logger.debug(f"Counter {counter_id} contention, retry {attempt + 1}/{self.max_retries}")

        raise AllocationConflict(f"Could not allocate index from {counter_id} after {self.max_retries} attempts")


class DepositAddressService:
    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        chains: Optional[dict[str, ChainConfig]] = None,
        allocator: Optional[CounterAllocator] = None,
    ):
        self.session_factory = session_factory
        self.chains = chains if chains is not None else get_chain_configs()
        self.allocator = allocator or CounterAllocator(session_factory)

    def _chain(self, chain: str) -> ChainConfig:
        config = self.chains.get(chain.upper()) if chain else None
        if config is None:
            raise UnsupportedChain(f"Unsupported chain: {chain}")
        return config

    async def get_active(self, user_id: int, chain: str) -> Optional[DepositAddress]:
        async with self.session_factory() as db:
            return await db.scalar(
                select(DepositAddress).where(
                    DepositAddress.user_id == user_id,
                    DepositAddress.chain == chain.upper(),
                    DepositAddress.status == DepositAddressStatus.active,
                ).order_by(DepositAddress.id.desc()).limit(1)
            )

    async def get_or_create(self, user_id: int, chain: str) -> DepositAddress:
        config = self._chain(chain)
        existing = await self.get_active(user_id, config.chain)
        if existing:
            return existing

        if not config.xpub:
            raise InvalidKeyFormat(f"No extended public key configured for {config.chain}")

        index = await self.allocator.allocate(config.counter_id)
        address = derive_address(config.xpub, index, config.address_family, config.network)

        async with self.session_factory() as db:
            record = DepositAddress(
                user_id=user_id,
                chain=config.chain,
                address=address,
                derivation_index=index,
                status=DepositAddressStatus.active,
            )
            db.add(record)
            await db.commit()
            await db.refresh(record)

        logger.info(f"Issued {config.chain} deposit address {address} (index {index}) to user {user_id}")
        return record

    async def retire(self, address_id: int) -> DepositAddress:
        async with self.session_factory() as db:
            record = await db.get(DepositAddress, address_id)
            if not record:
                raise NotFound(f"Deposit address {address_id} not found")
            record.status = DepositAddressStatus.retired
            await db.commit()
            await db.refresh(record)
        logger.info(f"Retired deposit address {record.address} ({record.chain})")
        return record
