import pytest

from exceptions import MalformedEventError
from normalizer import ContractKind, normalize
from store import queries
from store.models import SaleActivity, SaleConfig, TokenDeployment
from store.projector import project, project_logs

TOKEN = "0x" + "aa" * 20
OTHER_TOKEN = "0x" + "bb" * 20
FACTORY = "0x" + "ff" * 20


@pytest.fixture
def scenario_logs(make_log, deployment_args, sale_args):
    return [
        (make_log(deployment_args(), address=FACTORY, block=10), ContractKind.FACTORY, "RefundableTokenDeployed"),
        (make_log(sale_args(), block=15), ContractKind.SALE, "SaleCreated"),
        (make_log({"tokensPurchased": 300, "fundingAmountSpent": 15_000_000}, block=30), ContractKind.SALE, "Purchased"),
        (make_log({"tokenAmount": 100, "fundingTokenAmount": 5_000_000}, block=40), ContractKind.SALE, "Refunded"),
    ]


async def _snapshot():
    return (
        sorted(await TokenDeployment.all().values_list("id", "token_address", "max_supply")),
        sorted(await SaleConfig.all().values_list("id", "sale_amount", "purchase_price")),
        sorted(await SaleActivity.all().values_list("id", "kind", "token_amount", "funding_amount")),
    )


async def test_projects_every_event_type(db, scenario_logs):
    stats = await project_logs(scenario_logs)
    assert (stats.inserted, stats.duplicates, stats.dropped) == (4, 0, 0)

    dep = await queries.get_deployment(TOKEN.upper().replace("0X", "0x"))
    assert dep.name == "Test Token"
    assert dep.max_supply == str(10 ** 24)

    activity = await queries.list_sale_activity(TOKEN)
    assert [a.kind for a in activity] == [SaleActivity.KIND_PURCHASE, SaleActivity.KIND_REFUND]
    assert activity[0].funding_amount == "15000000"


async def test_replay_is_idempotent(db, scenario_logs):
    await project_logs(scenario_logs)
    before = await _snapshot()

    stats = await project_logs(scenario_logs)

    assert (stats.inserted, stats.duplicates) == (0, 4)
    assert await _snapshot() == before


async def test_project_returns_false_on_duplicate_id(db, make_log):
    evt = normalize(make_log({"tokensPurchased": 5, "fundingAmountSpent": 250_000}, block=30), "Sale", "Purchased")
    assert await project(evt) is True
    assert await project(evt) is False
    assert await SaleActivity.all().count() == 1


async def test_project_rejects_non_events(db):
    with pytest.raises(TypeError):
        await project({"event": "Purchased"})


async def test_dropped_logs_are_counted_not_stored(db, make_log):
    logs = [(make_log({"tokensPurchased": 1, "fundingAmountSpent": 1}, address=None), ContractKind.SALE, "Purchased")]
    stats = await project_logs(logs)
    assert stats.dropped == 1
    assert await SaleActivity.all().count() == 0


async def test_malformed_log_stops_the_batch(db, make_log):
    logs = [
        (make_log({"tokensPurchased": 1, "fundingAmountSpent": 1}, block=1), ContractKind.SALE, "Purchased"),
        (make_log({"tokensPurchased": 1}, block=2), ContractKind.SALE, "Purchased"),
        (make_log({"tokensPurchased": 1, "fundingAmountSpent": 1}, block=3), ContractKind.SALE, "Purchased"),
    ]
    with pytest.raises(MalformedEventError):
        await project_logs(logs)
    assert await SaleActivity.all().values_list("block_number", flat=True) == [1]


async def test_current_config_is_the_latest_by_block(db, make_log, sale_args):
    logs = [
        (make_log(sale_args(sale_amount=amount), block=block), ContractKind.SALE, "SaleCreated")
        for amount, block in ((100, 100), (250, 250), (180, 180))
    ]
    await project_logs(logs)

    current = await queries.current_sale_config(TOKEN)
    assert current.block_number == 250
    assert current.sale_amount == "250"

    history = await queries.sale_config_history(TOKEN)
    assert [c.block_number for c in history] == [250, 180, 100]


async def test_same_block_configs_break_ties_on_log_index(db, make_log, sale_args):
    await project_logs([
        (make_log(sale_args(sale_amount=1), block=50, log_index=4), ContractKind.SALE, "SaleCreated"),
        (make_log(sale_args(sale_amount=2), block=50, log_index=1), ContractKind.SALE, "SaleCreated"),
    ])
    assert (await queries.current_sale_config(TOKEN)).sale_amount == "1"


async def test_token_listings(db, make_log, deployment_args, sale_args):
    await project_logs([
        (make_log(deployment_args(), address=FACTORY, block=10), ContractKind.FACTORY, "RefundableTokenDeployed"),
        (make_log(deployment_args(token=OTHER_TOKEN, symbol="OTH"), address=FACTORY, block=11), ContractKind.FACTORY, "RefundableTokenDeployed"),
        (make_log(sale_args(), block=12), ContractKind.SALE, "SaleCreated"),
    ])

    assert await queries.known_token_addresses() == [TOKEN, OTHER_TOKEN]
    assert await queries.tokens_with_sales() == [TOKEN]
    assert [d.symbol for d in await queries.list_deployments()] == ["OTH", "TST"]
    assert list((await queries.current_sale_configs()).keys()) == [TOKEN]


async def test_logs_without_position_are_not_collapsed(db, make_log):
    logs = []
    for amount in (1, 2):
        raw = make_log({"tokensPurchased": amount, "fundingAmountSpent": amount * 50_000}, block=30, tx_hash="0xbeef")
        del raw["logIndex"]
        logs.append((raw, ContractKind.SALE, "Purchased"))

    with pytest.raises(MalformedEventError):
        await project_logs(logs)
    assert await SaleActivity.all().count() == 0
