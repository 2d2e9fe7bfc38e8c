# File: src/lotsync/main.py
"""
lotsync demo runner

Builds an engine from configuration and walks through a check-in /
check-out cycle on a fresh lot while a lot observer prints every counter
snapshot it receives.

Usage:
    python -m lotsync.main [--config engine.yaml] [--backend memory|sqlalchemy|mongo] [--spaces 10]
"""

from datetime import timedelta
from typing import List, Optional
import argparse
import asyncio
import logging
import os
import sys

from .config import EngineConfig, BACKENDS
from .domain.exceptions import LotSyncError
from .domain.models import Actor, Occupant, ParkingLot, SpaceStatus, UserRole, utcnow
from .infrastructure.factories import EngineFactory


def setup_logging(config: EngineConfig) -> logging.Logger:
    """Setup application logging configuration"""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)
        handlers.append(logging.FileHandler(config.log_file))

    logging.basicConfig(
        level=config.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    return logging.getLogger("lotsync")


class DemoClock:
    """Wall clock that the demo can fast-forward"""

    def __init__(self):
        self.offset = timedelta(0)

    def __call__(self):
        return utcnow() + self.offset

    def advance(self, **kwargs) -> None:
        self.offset += timedelta(**kwargs)


async def run_demo(config: EngineConfig, spaces: int) -> int:
    logger = logging.getLogger("lotsync.demo")
    clock = DemoClock()
    admin = Actor(user_id="admin-1", role=UserRole.ADMIN)
    worker = Actor(user_id="worker-1", role=UserRole.WORKER)

    def show(lot: Optional[ParkingLot]) -> None:
        if lot is None:
            logger.info("Lot removed")
            return
        logger.info(
            f"[{lot.name}] total={lot.total_spaces} available={lot.available_spaces} "
            f"occupied={lot.occupied_spaces} booked={lot.booked_spaces}"
        )

    async with await EngineFactory.build(config, clock=clock) as engine:
        lot = await engine.administration.create_lot("Main Campus", "Gate A", actor=admin)
        watch = engine.propagation.subscribe_to_lot(lot.id, show)
        try:
            created = await engine.transitions.create_multiple_spaces(lot.id, 1, spaces, actor=admin)
            target = created.spaces[min(2, len(created.spaces) - 1)]

            await engine.transitions.set_status(
                target.id, SpaceStatus.OCCUPIED,
                Occupant(user_email="guest@example.com", vehicle_info="KDA 123A"),
                actor=worker,
            )
            await engine.propagation.drain()

            clock.advance(minutes=95)
            estimate = await engine.transitions.estimate_charge(target.id, UserRole.GUEST)
            logger.info(f"Live estimate after {estimate.duration_minutes:.0f} min: {estimate.amount} KSH")

            checkout = await engine.transitions.check_out(target.id, UserRole.GUEST, actor=worker)
            logger.info(f"Settled {checkout.charge} KSH ({checkout.billing_type})")
            await engine.propagation.drain()
        finally:
            watch.cancel()
            await engine.administration.delete_lot(lot.id, actor=admin)
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the lotsync check-in / check-out demo")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--backend", choices=BACKENDS, help="Override the configured storage backend")
    parser.add_argument("--database-url", help="Override the SQLAlchemy database URL")
    parser.add_argument("--spaces", type=int, default=10, help="Number of spaces in the demo lot")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = EngineConfig.load(args.config)
        overrides = {}
        if args.backend:
            overrides['backend'] = args.backend
        if args.database_url:
            overrides['database_url'] = args.database_url
        if overrides:
            config = EngineConfig.from_mapping(overrides, base=config)
    except LotSyncError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logger = setup_logging(config)
    logger.info("Starting lotsync demo...")
    try:
        return asyncio.run(run_demo(config, args.spaces))
    except LotSyncError as e:
        logger.error(f"Demo failed ({e.kind.value}): {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
