import pytest
import pytest_asyncio

from imgrouter.api.schemas import GatewaySettings, ModelSizeConfig, Provider
from imgrouter.db.database import init_db
from imgrouter.db.models import ConfigStore
from imgrouter.services.key_pool import KeyRecord, PoolSnapshot


def _snapshot() -> PoolSnapshot:
    return PoolSnapshot(
        records=[
            KeyRecord(
                id="k1", name="volc", credential="0f8fad5b-d9cb-469f-a165-70867728950e",
                provider=Provider.VOLCENGINE, rotation_weight=2, usage_count=7,
                created_at=1_700_000_000.25,
            ),
            KeyRecord(
                id="k2", name="gitee", credential="A1b2C3d4E5" * 4,
                provider=Provider.GITEE, usage_count=3, suspended=True,
                suspended_until=1_700_086_400.5, created_at=1_700_000_100.0,
            ),
        ],
        cursor=1,
        cursor_usage=0,
        settings=GatewaySettings(
            access_token="secret",
            active_provider="Gitee",
            model_sizes={"Gitee": ModelSizeConfig(textToImage="512x512")},
        ),
    )


@pytest_asyncio.fixture
async def store(tmp_path) -> ConfigStore:
    path = str(tmp_path / "data" / "test.db")
    await init_db(path)
    return ConfigStore(path)


@pytest.mark.asyncio
async def test_load_empty_store(store: ConfigStore) -> None:
    assert await store.load() is None


@pytest.mark.asyncio
async def test_save_load_round_trip(store: ConfigStore) -> None:
    snapshot = _snapshot()
    assert await store.save(snapshot) is True

    loaded = await store.load()
    assert loaded == snapshot

    # Saving what was loaded is idempotent
    assert await store.save(loaded) is True
    assert await store.load() == snapshot


@pytest.mark.asyncio
async def test_save_replaces_previous_records(store: ConfigStore) -> None:
    snapshot = _snapshot()
    await store.save(snapshot)

    snapshot.records = snapshot.records[1:]
    snapshot.cursor = 0
    await store.save(snapshot)

    loaded = await store.load()
    assert [r.id for r in loaded.records] == ["k2"]
    assert loaded.cursor == 0


@pytest.mark.asyncio
async def test_record_order_is_preserved(store: ConfigStore) -> None:
    snapshot = _snapshot()
    snapshot.records.reverse()
    await store.save(snapshot)
    assert [r.id for r in (await store.load()).records] == ["k2", "k1"]


@pytest.mark.asyncio
async def test_failed_save_reports_false(tmp_path) -> None:
    # A directory cannot be opened as a database file
    store = ConfigStore(str(tmp_path))
    assert await store.save(_snapshot()) is False
