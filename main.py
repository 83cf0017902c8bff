import json
import asyncio
import argparse
from loguru import logger
from pydantic import ValidationError
from utils.config import load_config
from utils.log import init_logger_by_runid
from utils.models import RunInput
from novel.batch import run_batch


init_logger_by_runid("novel")


async def write_all(projects_data: list):
    logger.info(f"received {len(projects_data)} projects")

    run_inputs = []
    for project_info in projects_data:
        if not project_info or not project_info.get("project_id") or not project_info.get("premise"):
            logger.error(f"incomplete project entry, skipped: {project_info}")
            continue
        try:
            run_inputs.append(RunInput(**project_info))
        except ValidationError as e:
            logger.error(f"invalid project entry {project_info.get('project_id')}, skipped: {e}")

    if not run_inputs:
        logger.info("nothing to run")
        return

    await run_batch(run_inputs, load_config())


def main():
    parser = argparse.ArgumentParser(description="Generate serialized novels from a JSON job file.")
    parser.add_argument(
        "json_file",
        type=str,
        help='{"projects": [{"project_id": ..., "premise": ..., "target_chapters": ...}]}',
    )
    args = parser.parse_args()
    with open(args.json_file, 'r', encoding='utf-8') as f:
        data = json.load(f)
    projects_data = data.get("projects")
    if not projects_data:
        return
    asyncio.run(write_all(projects_data))


if __name__ == "__main__":
    main()
