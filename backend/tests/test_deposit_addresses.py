import asyncio
import pytest
from sqlalchemy import select
from custody.exceptions import InvalidKeyFormat, NotFound, UnsupportedChain
from custody.models.deposit import DepositAddress, DepositAddressStatus
from custody.services.address_derivation import derive_address
from custody.services.deposit_addresses import CounterAllocator, DepositAddressService
from conftest import TEST_XPUB


@pytest.mark.asyncio
async def test_counter_starts_at_zero_and_increments(session_factory):
    allocator = CounterAllocator(session_factory)
    assert [await allocator.allocate("deposit_index:evm") for _ in range(4)] == [0, 1, 2, 3]
    assert await allocator.allocate("deposit_index:btc") == 0


@pytest.mark.asyncio
async def test_concurrent_allocations_never_repeat(session_factory):
    allocator = CounterAllocator(session_factory, max_retries=50)
    await allocator.allocate("deposit_index:evm")
    indices = await asyncio.gather(*(allocator.allocate("deposit_index:evm") for _ in range(8)))
    assert sorted(indices) == list(range(1, 9))


@pytest.mark.asyncio
async def test_get_or_create_is_stable(session_factory, chains):
    service = DepositAddressService(session_factory, chains=chains)
    first = await service.get_or_create(1, "ETH")
    again = await service.get_or_create(1, "eth")
    assert first.id == again.id
    assert first.address == derive_address(TEST_XPUB, first.derivation_index)


@pytest.mark.asyncio
async def test_users_get_distinct_addresses(session_factory, chains):
    service = DepositAddressService(session_factory, chains=chains)
    a = await service.get_or_create(1, "ETH")
    b = await service.get_or_create(2, "ETH")
    assert a.address != b.address
    assert a.derivation_index != b.derivation_index


@pytest.mark.asyncio
async def test_evm_chains_share_one_index_space(session_factory, chains):
    service = DepositAddressService(session_factory, chains=chains)
    eth = await service.get_or_create(1, "ETH")
    matic = await service.get_or_create(1, "MATIC")
    btc = await service.get_or_create(1, "BTC")

    # ETH and MATIC derive from the same xpub, so the index must not repeat
    assert eth.derivation_index == 0
    assert matic.derivation_index == 1
    assert btc.derivation_index == 0
    assert btc.address.startswith("bc1q")


@pytest.mark.asyncio
async def test_unknown_chain_rejected(session_factory, chains):
    service = DepositAddressService(session_factory, chains=chains)
    with pytest.raises(UnsupportedChain):
        await service.get_or_create(1, "DOGE")


@pytest.mark.asyncio
async def test_missing_xpub_rejected(session_factory, chains):
    chains["ETH"] = chains["ETH"].model_copy(update={"xpub": ""})
    service = DepositAddressService(session_factory, chains=chains)
    with pytest.raises(InvalidKeyFormat):
        await service.get_or_create(1, "ETH")


@pytest.mark.asyncio
async def test_retire_issues_fresh_address(session_factory, chains):
    service = DepositAddressService(session_factory, chains=chains)
    old = await service.get_or_create(1, "ETH")
    retired = await service.retire(old.id)
    assert retired.status == DepositAddressStatus.retired

    new = await service.get_or_create(1, "ETH")
    assert new.id != old.id
    assert new.derivation_index > old.derivation_index

    async with session_factory() as db:
        rows = list(await db.scalars(select(DepositAddress).where(DepositAddress.user_id == 1)))
    assert len(rows) == 2


@pytest.mark.asyncio
async def test_retire_unknown_address(session_factory, chains):
    service = DepositAddressService(session_factory, chains=chains)
    with pytest.raises(NotFound):
        await service.retire(999)
