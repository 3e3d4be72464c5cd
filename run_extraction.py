#!/usr/bin/env python3
"""
Extraction runner for the template learning engine.

Loads templates, runs raw field guesses through the pipeline and writes the
extraction, validation and anomaly results as JSON alongside a short summary.
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent / "src"))

from template_learning import (
    EngineConfig,
    ExtractionPipeline,
    JsonPatternBackend,
    PatternStore,
    TemplateRegistry,
)


def create_results_directory(base: str = "outputs/extraction") -> Path:
    """Create a timestamped results directory.

    Returns:
        Path: Path to the new results directory.
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    results_dir = Path(base) / timestamp
    results_dir.mkdir(parents=True, exist_ok=True)
    return results_dir


def load_documents(paths: list) -> list:
    """Read raw-guess files; each holds one document or a list of documents."""
    documents = []
    for path in paths:
        with open(path, 'r') as f:
            data = json.load(f)
        if isinstance(data, list):
            documents.extend(data)
        else:
            documents.append(data)
    return documents


def print_outcome(outcome) -> None:
    extraction = outcome.extraction
    print(f"\n📄 {outcome.document_id}")
    print(f"  Template: {extraction.template_id or 'none'} ({outcome.selection.reason})")
    print(f"  Confidence: {extraction.overall_confidence:.2%}")
    for name, resolution in extraction.fields.items():
        if resolution.skipped:
            print(f"    - {name}: skipped")
            continue
        source = resolution.source.value if resolution.source else "unresolved"
        value = resolution.resolved_value if resolution.resolved else resolution.raw_value
        line = f"    • {name}: {value} [{source}, {resolution.confidence_score:.2f}]"
        if resolution.suggested_value:
            line += f" (suggested: {resolution.suggested_value})"
        print(line)

    if outcome.validation.violations:
        print("  Violations:")
        for violation in outcome.validation.violations:
            print(f"    ⚠️ [{violation.severity.value}] {violation.rule}: {violation.message}")
    print(f"  Anomaly score: {outcome.anomaly.anomaly_score:.2f}{' (flagged)' if outcome.anomaly.flagged else ''}")
    if outcome.request:
        print(f"  🔍 Review requested: {', '.join(r.value for r in outcome.request.reasons)}")


def main():
    """Main entry point.

    Returns:
        int: Exit code (0 for success, 1 for failure).
    """
    parser = argparse.ArgumentParser(
        description="Template learning engine - resolve raw field guesses against templates"
    )
    parser.add_argument(
        'documents',
        nargs='+',
        help='Raw-guess JSON files (document_id, document_type, supplier_id, raw_fields)'
    )
    parser.add_argument(
        '--templates',
        default='templates/document_templates',
        help='Directory of template JSON files'
    )
    parser.add_argument(
        '--patterns',
        default='outputs/learning_patterns.json',
        help='JSON file holding learned patterns'
    )
    parser.add_argument(
        '--env-file',
        help='Optional .env file with EXTRACTION_* overrides'
    )
    parser.add_argument(
        '--output',
        default='outputs/extraction',
        help='Base directory for results'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable debug logging'
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("=" * 60)
    print("TEMPLATE EXTRACTION")
    print(f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 60)

    existing = [d for d in args.documents if Path(d).exists()]
    if not existing:
        print("\n❌ No documents found to process")
        return 1

    config = EngineConfig.from_env(args.env_file)
    registry = TemplateRegistry(Path(args.templates))
    pattern_store = PatternStore(JsonPatternBackend(Path(args.patterns)), config)
    pipeline = ExtractionPipeline(registry, pattern_store, config)

    documents = load_documents(existing)
    print(f"\n📋 Documents to process: {len(documents)}")

    outcomes = pipeline.process_batch(documents)
    results_dir = create_results_directory(args.output)

    for document, outcome in zip(documents, outcomes):
        if outcome is None:
            print(f"\n❌ {document.get('document_id')}: processing failed")
            continue
        print_outcome(outcome)
        with open(results_dir / f"{outcome.document_id}.json", 'w') as f:
            json.dump(outcome.to_dict(), f, indent=2, default=str)

    stats = pipeline.get_stats()
    print("\n📊 Summary:")
    for key, value in stats.items():
        print(f"  {key}: {value}")
    print(f"\n📁 Results saved to: {results_dir}")

    return 0 if all(outcomes) else 1


if __name__ == "__main__":
    sys.exit(main())
