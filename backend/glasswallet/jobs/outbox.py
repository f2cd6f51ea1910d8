from glasswallet.domain.outbox.service import OutboxAdapters, process_outbox
from glasswallet.settings import settings


async def run_outbox_delivery(session, adapters: OutboxAdapters) -> dict[str, int]:
    return await process_outbox(session, adapters, limit=settings.outbox_batch_size)
