import asyncio
import os
import sys
import logging
from datetime import date
from pathlib import Path

import aiohttp
from dotenv import load_dotenv

from lockminer.application.classifier import LockfileClassifier
from lockminer.application.discovery_service import RepositoryDiscoveryService
from lockminer.application.mining_service import MiningScheduler
from lockminer.domain.exceptions import MinerException
from lockminer.domain.models import SearchConfig
from lockminer.infrastructure.checkpoint_store import CheckpointStore
from lockminer.infrastructure.credentials import CredentialQueue
from lockminer.infrastructure.rate_limit import RateLimitGuard
from lockminer.infrastructure.storage import DiscoveryLog, JsonBreakingUpdateSink

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

# Limit concurrent connections to avoid overwhelming GitHub's servers
CONNECTOR_LIMIT = 10


async def main():
    # Load environment variables from .env file
    load_dotenv()

    tokens = [t.strip() for t in os.getenv("GITHUB_TOKENS", "").split(",") if t.strip()]
    search_config_path = Path(os.getenv("SEARCH_CONFIG", "search_config.json"))
    checkpoint_path = Path(os.getenv("CHECKPOINT_FILE", "repositories.json"))
    output_dir = Path(os.getenv("OUTPUT_DIR", "output"))
    start_date = os.getenv("DISCOVERY_START_DATE") or None
    rate_limit_policy = os.getenv("RATE_LIMIT_POLICY", "sleep")
    retry_budget = int(os.getenv("MINING_RETRY_BUDGET", "0"))

    if not tokens:
        logger.error("GITHUB_TOKENS is not set in the environment.")
        sys.exit(1)

    try:
        guard = RateLimitGuard(on_exhausted=rate_limit_policy)
        credentials = CredentialQueue(tokens, guard)
        # A resume date means an earlier discovery was cut short; an existing checkpoint alone means it finished.
        discover = start_date is not None or not checkpoint_path.exists()
        store = CheckpointStore(checkpoint_path)

        async with aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=CONNECTOR_LIMIT),
        ) as session:
            if discover:
                if not search_config_path.exists():
                    logger.error(f"Discovery needs a search config, none found at {search_config_path}.")
                    sys.exit(1)
                config = SearchConfig.from_json(search_config_path)
                discovery = RepositoryDiscoveryService(
                    credentials=credentials,
                    store=store,
                    config=config,
                    classifier=LockfileClassifier(config.ecosystems),
                    discovery_log=DiscoveryLog(output_dir),
                )
                await discovery.discover(session, date.fromisoformat(start_date) if start_date else None)
            else:
                logger.info(f"Found checkpoint file {checkpoint_path}, skipping discovery.")

            scheduler = MiningScheduler(
                credentials=credentials,
                store=store,
                sink=JsonBreakingUpdateSink(output_dir),
                retry_budget=retry_budget,
            )
            await scheduler.mine(session)
    except KeyboardInterrupt:
        logger.info("Mining interrupted by user. Exiting gracefully.")
    except MinerException as e:
        logger.error(f"Aborting: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"An unexpected error occurred: {e}")
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
