"""Bitcoin mining potential of curtailed energy."""

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, localcontext
from typing import Dict, Iterable, List, Mapping, Tuple, Union

from reconciler.core.exceptions import ConfigurationError, InvalidParameterError

BLOCK_REWARD = Decimal("3.125")
BLOCK_INTERVAL_SECONDS = Decimal(600)
SETTLEMENT_PERIOD_HOURS = Decimal("0.5")
BLOCKS_PER_PERIOD = Decimal(3)
HASHES_PER_DIFFICULTY = Decimal(2) ** 32
TERAHASH = Decimal(10) ** 12

BITCOIN_QUANTUM = Decimal("0.00000001")


@dataclass(frozen=True)
class MinerModel:
    """Published throughput and power draw of one ASIC model."""

    name: str
    hashrate_th: Decimal
    power_w: Decimal


MINER_MODELS: Dict[str, MinerModel] = {
    "S19J_PRO": MinerModel("S19J_PRO", Decimal("100"), Decimal("3050")),
    "S9": MinerModel("S9", Decimal("13.5"), Decimal("1323")),
    "M20S": MinerModel("M20S", Decimal("68"), Decimal("3360")),
}

ModelRef = Union[str, MinerModel]


def get_miner_model(model: ModelRef) -> MinerModel:
    """Resolve a model name to its parameters."""
    if isinstance(model, MinerModel):
        return model
    try:
        return MINER_MODELS[model]
    except KeyError:
        raise InvalidParameterError(f"Unknown miner model: {model}")


def resolve_miner_models(names: Iterable[str]) -> List[MinerModel]:
    """Resolve configured model names, failing before any work starts."""
    resolved = []
    for name in names:
        if name not in MINER_MODELS:
            raise ConfigurationError(
                f"Unknown miner model '{name}'. Known models: {', '.join(sorted(MINER_MODELS))}"
            )
        resolved.append(MINER_MODELS[name])
    if not resolved:
        raise ConfigurationError("At least one miner model must be configured")
    return resolved


def calculate_bitcoin(volume_mwh: Decimal, miner_model: ModelRef, difficulty: Decimal) -> Decimal:
    """Bitcoin that ``volume_mwh`` of energy could mine in one settlement period.

    The energy runs as many miners as it can power for the whole period;
    their combined hashrate as a share of the network hashrate implied by
    ``difficulty`` earns that share of the period's block rewards.

    Args:
        volume_mwh: Absolute curtailed volume, must be positive.
        miner_model: Model name or parameters.
        difficulty: Network difficulty, must be positive.

    Returns:
        Amount in BTC rounded half-up to 8 decimal places.
    """
    model = get_miner_model(miner_model)
    volume = Decimal(volume_mwh)
    difficulty = Decimal(difficulty)

    if difficulty <= 0:
        raise InvalidParameterError(f"Difficulty must be positive, got {difficulty}")
    if volume <= 0:
        raise InvalidParameterError(f"Volume must be positive, got {volume}")

    with localcontext() as ctx:
        ctx.prec = 40
        network_hashrate_th = difficulty * HASHES_PER_DIFFICULTY / BLOCK_INTERVAL_SECONDS / TERAHASH
        miners = volume * 1000 / (model.power_w / 1000) / SETTLEMENT_PERIOD_HOURS
        share = miners * model.hashrate_th / network_hashrate_th
        bitcoin = share * BLOCK_REWARD * BLOCKS_PER_PERIOD

    return bitcoin.quantize(BITCOIN_QUANTUM, rounding=ROUND_HALF_UP)


def apportion_period_total(
    total: Decimal, volumes: Mapping[str, Decimal]
) -> Dict[str, Decimal]:
    """Split a period total across farms in proportion to their volumes.

    Each farm gets its share rounded down to 8 dp; the leftover units go to
    the farms with the largest remainders, ties broken by farm id. The
    returned amounts always sum to ``total`` exactly.
    """
    if not volumes:
        return {}

    total = Decimal(total).quantize(BITCOIN_QUANTUM, rounding=ROUND_HALF_UP)
    volume_sum = sum(volumes.values(), Decimal(0))
    if volume_sum <= 0:
        raise InvalidParameterError("Apportioned volumes must sum to a positive value")

    shares: Dict[str, Decimal] = {}
    remainders: List[Tuple[Decimal, str]] = []
    with localcontext() as ctx:
        ctx.prec = 40
        for farm_id, volume in volumes.items():
            exact = total * volume / volume_sum
            floored = exact.quantize(BITCOIN_QUANTUM, rounding=ROUND_DOWN)
            shares[farm_id] = floored
            remainders.append((exact - floored, farm_id))

    leftover_units = int((total - sum(shares.values(), Decimal(0))) / BITCOIN_QUANTUM)
    remainders.sort(key=lambda item: (-item[0], item[1]))
    for _, farm_id in remainders[:leftover_units]:
        shares[farm_id] += BITCOIN_QUANTUM

    return shares


def calculate_period(
    farm_volumes: Mapping[str, Decimal], miner_model: ModelRef, difficulty: Decimal
) -> Tuple[Decimal, Dict[str, Decimal]]:
    """Period total for the summed volume and its per-farm apportionment."""
    total = calculate_bitcoin(sum(farm_volumes.values(), Decimal(0)), miner_model, difficulty)
    return total, apportion_period_total(total, farm_volumes)
