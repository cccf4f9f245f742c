"""Run the protocol pipeline over an OCR text file and write the timeline as JSON.

Ctrl-C stops the run before its next chunk; the partial timeline is still written.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.analysis.analyzer import AnalysisBatchError
from src.analysis.insights import InsufficientDataError
from src.concurrency import CancellationToken
from src.config import settings
from src.extraction.assembler import RunState
from src.llm.errors import ModelError
from src.services import build_services

logger = logging.getLogger("run_protocol")


async def run_protocol(
    text: str,
    protocol_id: str | None = None,
    pages_per_chunk: int | None = None,
    analyze: bool = False,
    insights: bool = False,
) -> dict[str, Any]:
    services = build_services(settings)
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except NotImplementedError:
        logger.info("Cooperative Ctrl-C is not supported on this platform")

    assembler = services.new_assembler(pages_per_chunk)
    run = await assembler.start(text, protocol_id=protocol_id, cancel_token=token)
    entries = run.entries
    output: dict[str, Any] = {
        "protocol_id": run.protocol_id,
        "state": run.state.value,
        "summary": run.summary(),
        "failures": [asdict(f) for f in run.failures],
        "error": run.error,
    }

    if analyze and run.state is RunState.COMPLETED:
        result = await services.analyzer.analyze(entries, cancel_token=token)
        entries = result.entries
        output["unmatched_ids"] = result.unmatched_ids
        output["analysis_cancelled"] = result.cancelled

        if insights and not result.cancelled:
            try:
                key_insights = await services.synthesizer.synthesize(entries)
            except InsufficientDataError as exc:
                logger.warning("Skipping insights: %s", exc)
            else:
                output["insights"] = asdict(key_insights)

    output["entries"] = [e.to_dict() for e in entries]
    return output


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("input", help="OCR text file with page markers")
    parser.add_argument("--protocol-id", default=None, help="Override the WP_<n>/<m> lookup")
    parser.add_argument("--pages-per-chunk", type=int, default=None)
    parser.add_argument("--analyze", action="store_true", help="Enrich Q/A pairs after parsing")
    parser.add_argument("--insights", action="store_true", help="Synthesize key insights (implies --analyze)")
    parser.add_argument("--output", default=None, help="Write JSON here instead of stdout")
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    text = Path(args.input).read_text(encoding="utf-8")
    try:
        output = asyncio.run(
            run_protocol(
                text,
                protocol_id=args.protocol_id,
                pages_per_chunk=args.pages_per_chunk,
                analyze=args.analyze or args.insights,
                insights=args.insights,
            )
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except (AnalysisBatchError, ModelError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    rendered = json.dumps(output, ensure_ascii=False, indent=2)
    if args.output:
        Path(args.output).write_text(rendered, encoding="utf-8")
        print(f"Wrote {len(output['entries'])} entries to {args.output} ({output['summary']})")
    else:
        print(rendered)
    return 0


if __name__ == "__main__":
    sys.exit(main())
