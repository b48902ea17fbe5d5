import sys, os
import asyncio
import logging
import pathlib

# Ensure we are in the correct directory regardless of how this is called
SCRIPT_DIR = str(pathlib.Path(__file__).parent.absolute())
sys.path.insert(0, SCRIPT_DIR)
os.chdir(SCRIPT_DIR)

from dotenv import load_dotenv
load_dotenv()

from config import load_config
from executor.engine_builder import EngineBuilder

config = load_config()
logging.basicConfig(
    level=config.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(config.log_file),
        logging.StreamHandler()
    ]
)


async def main():
    print("Starting one-off poll cycle...")
    # One claim-and-advance cycle; meant to be called from cron
    engine = EngineBuilder.build(config)
    stats = await engine.poll()
    print(f"Finished poll cycle: {stats}")


if __name__ == "__main__":
    asyncio.run(main())
