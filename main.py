import asyncio
import logging
import sys
from pathlib import Path

from docingest.config import get_config
from docingest.ingestion import create_ingestion_coordinator
from docingest.models import DuplicateConflict


async def main(container_id: str, paths: list[str]):
    """Ingest local files into a container and wait for parsing to settle."""
    coordinator = await create_ingestion_coordinator()
    try:
        attachment_ids = []
        for path in paths:
            file_path = Path(path)
            result = await coordinator.ingest(container_id, file_path.name, file_path.read_bytes())
            if isinstance(result, DuplicateConflict):
                print(f"{file_path.name}: already attached as {result.existing_attachment_id}")
                continue
            print(f"{file_path.name}: attachment {result.attachment.id} ({result.parse_status.value})")
            attachment_ids.append(result.attachment.id)

        await coordinator.orchestrator.drain()

        for attachment_id in attachment_ids:
            status = await coordinator.get_attachment_status(attachment_id)
            preview = (status.parsed_text or "")[:80].replace("\n", " ")
            print(f"{attachment_id}: {status.parse_status.value} {preview}")
    finally:
        await coordinator.close()


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print("Usage: python main.py <container_id> <file> [<file> ...]")
        sys.exit(1)

    logging.basicConfig(level=get_config().logging.level)
    asyncio.run(main(sys.argv[1], sys.argv[2:]))
