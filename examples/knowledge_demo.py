"""
Knowledge base example: ingest a document and ask a question about it.
"""

import asyncio

from pyknowledge import MemoryKnowledgeStore, ProcessingJob, SearchRequest, load_config
from pyknowledge.rag import create_document_processor, create_knowledge_service


POLICY = """# Refund Policy

Items can be returned within 30 days of delivery. Refunds are issued to
the original payment method within 5 business days.

## Exceptions

- Gift cards
- Opened software
"""


async def main():
    # Reads pyknowledge.yaml if present; OPENAI_API_KEY supplies the key
    config = load_config()
    store = MemoryKnowledgeStore()

    processor = create_document_processor(config, store)
    result = await processor.process(
        ProcessingJob(
            document_id="refund-policy",
            tenant_id="demo",
            source_type="text",
            title="Refund Policy",
            raw_content=POLICY,
        ),
        on_progress=lambda p: print(f"[{p.progress:3d}%] {p.message}"),
    )
    print(f"Created {result.chunks_created} chunks ({result.tokens_used} tokens)")

    service = create_knowledge_service(config, store)
    response = await service.search("demo", SearchRequest(query="Can I return a gift card?"))

    if response.success:
        print(f"Answer: {response.ai_response}")
        for citation in response.citations:
            print(f"  - {citation.document_title} ({citation.similarity:.2f})")
    else:
        print(f"Search failed: {response.error}")


if __name__ == "__main__":
    asyncio.run(main())
