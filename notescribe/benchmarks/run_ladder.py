import os
import json
import logging
import argparse
import datetime

from notescribe.benchmarks.ladder.runner import run_full_benchmark
from notescribe.pipeline.config import PipelineConfig, load_config


def main():
    parser = argparse.ArgumentParser(description="Run the synthetic benchmark ladder (L0-L4)")
    parser.add_argument("--level", action="append", help="Run specific level (e.g., L1_MONO); repeatable")
    parser.add_argument("--config", type=str, help="JSON file of config overrides")
    parser.add_argument("--output-dir", type=str, default=None)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    config = load_config(args.config) if args.config else PipelineConfig()

    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    output_dir = args.output_dir or f"results/ladder_{timestamp}"

    results = run_full_benchmark(config, output_dir=output_dir, level_ids=args.level)

    print("\n=== Ladder Benchmark Summary ===")
    print(f"| {'Level':<13} | {'Example':<20} | {'Prec':>5} | {'Recall':>6} | {'F1':>5} | {'Pass':<4} |")
    print("|" + "-" * 15 + "|" + "-" * 22 + "|" + "-" * 7 + "|" + "-" * 8 + "|" + "-" * 7 + "|" + "-" * 6 + "|")

    lines = ["# Ladder Benchmark Summary", "", f"Date: {datetime.datetime.now()}", "",
             "| Level | Example | Precision | Recall | F1 | Passed | Errors |", "|---|---|---|---|---|---|---|"]
    for level_id, examples in results.items():
        for ex in examples:
            m = ex.get("metrics", {})
            prec, rec, f1 = m.get("precision", 0.0), m.get("recall", 0.0), m.get("f1", 0.0)
            passed = "yes" if ex.get("passed") else "no"
            print(f"| {level_id:<13} | {ex['id']:<20} | {prec:5.2f} | {rec:6.2f} | {f1:5.2f} | {passed:<4} |")
            errs = "; ".join(ex["errors"]) if ex["errors"] else "None"
            lines.append(f"| {level_id} | {ex['id']} | {prec:.2f} | {rec:.2f} | {f1:.2f} | {passed} | {errs} |")

    summary_path = os.path.join(output_dir, "SUMMARY.md")
    with open(summary_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")

    print(f"\nResults saved to {output_dir}")
    failed = [ex["id"] for examples in results.values() for ex in examples if not ex.get("passed")]
    if failed:
        print(json.dumps({"failed": failed}))
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
