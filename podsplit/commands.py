"""
podsplit command line

Usage:
  podsplit split [INPUT] [BATCH_SIZE] [OUTPUT_DIR]
  podsplit split SAM-seq5.pod5 1000000 pod5_chunks --timeout 900 --strict
  podsplit verify pod5_chunks --input SAM-seq5.pod5
  podsplit convert fast5_dir/ SAM-seq5.pod5
  podsplit basecall pod5_chunks bam_chunks --task-id 3
  podsplit slurm pod5_chunks bam_chunks -o dorado_array.sbatch
  podsplit fastq bam_chunks fastq --workers 30

Exit status: 0 on success, 1 when a chunk or tool fails, 2 on bad
configuration.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .cli import (
    format_count,
    print_error,
    print_header,
    print_item,
    print_section,
    print_success,
    print_table,
    print_warning,
)
from .config import Config, load_config
from .errors import PodsplitError, handle_error
from .frequency import DEFAULT_RUN_SIZE, count_read_ids, filter_singletons
from .io import format_size, save_json
from .logging_config import add_logging_args, get_logger, setup_logging
from .partition import Chunk
from .pipeline import (
    BasecallSettings,
    bam_to_fastq,
    basecall_chunk,
    convert_fast5,
    generate_slurm_array_script,
    list_chunk_files,
    resolve_task_chunk,
)
from .splitter import SplitSettings, run_split, verify_outputs
from .store import Pod5Source
from .timing import format_duration

logger = get_logger(__name__)


# =============================================================================
# split
# =============================================================================

def _print_chunk_progress(chunk: Chunk, done: int, total: int) -> None:
    percent = done * 100 // total
    line = f"  [{percent:3d}%] {done:03d}/{total:03d} {chunk.output_name} ({format_count(chunk.size)} reads)... "
    if chunk.error:
        print(line + "FAILED")
        print(f"    {chunk.error}")
    elif chunk.skipped:
        print(line + f"skipped (already verified, {format_count(chunk.total)} reads)")
    elif chunk.warning:
        print(line + f"OK ({format_count(chunk.total)} reads, expected {format_count(chunk.size)})")
    else:
        print(line + f"✓ Perfect ({format_count(chunk.total)} reads, {format_duration(chunk.duration)})")
    sys.stdout.flush()


def cmd_split(args, config: Config) -> int:
    settings = SplitSettings.from_config(
        config,
        input_path=args.input,
        batch_size=args.batch_size,
        output_dir=args.output_dir,
        timeout=args.timeout,
        strict=True if args.strict else None,
        workers=args.workers,
        keep_temp=True if args.keep_temp else None,
        external_sort=args.external_sort,
        run_size=args.run_size,
    )
    settings.validate()

    print_header("POD5 Split - Non-Duplicated Reads Only")
    print_item("Input", settings.input_path)
    print_item("Output", settings.output_dir)
    print_item("Reads per chunk", format_count(settings.batch_size))
    print_item("Strategy", "only keep reads that appear exactly once")
    print()

    result = run_split(settings, progress=_print_chunk_progress)
    dedup = result.dedup

    print_section("Results")
    print_item("Input file", settings.input_path)
    print_item("Total reads in input", format_count(dedup.entries))
    print_item("Singleton reads (used)", format_count(len(dedup.singletons)))
    print_item("Duplicated reads (excluded)", format_count(dedup.duplicate_entries))
    print_item("Chunks verified", f"{len(result.report.verified)}/{len(result.chunks)}")
    if result.report.skipped:
        print_item("Skipped (already complete)", len(result.report.skipped))
    print_item("Extraction time", format_duration(result.report.duration))

    if args.json:
        save_json(args.json, result.to_dict())
        print_item("JSON", args.json)
    if result.manifest_path:
        print_item("Manifest", result.manifest_path)

    if not result.report.success:
        print()
        for ordinal, error in result.report.failures:
            print_error(f"Chunk {ordinal:03d} failed: {error.format_message(verbose=True)}")
        print_error("Re-run the same command to resume; verified chunks are skipped.")
        return 1

    final = result.final
    if final is not None:
        print_section("Final chunk verification")
        print_table(
            ["Chunk", "Size", "Reads", "Unique"],
            [
                [f["file"], format_size(f["size_bytes"]), format_count(f["total"]), format_count(f["unique"])]
                for f in final.files
            ],
            alignments=["l", "r", "r", "r"],
        )
        print_item("Total reads in all chunks", format_count(final.total_reads))
        print()
        if final.clean:
            print_success("All chunks are clean with only non-duplicated reads")
        else:
            print_warning("Issues detected in output")
            for issue in final.issues:
                print(f"  - {issue}")
            print_error("Remove chunk files that do not belong to this run, then run it again.")
            return 1

    if result.chunks:
        print()
        print("Next steps:")
        print(f"  Basecall with a {len(result.chunks)}-task array job:")
        print(f"    podsplit slurm {settings.output_dir} bam_chunks -o dorado_array.sbatch")
        print("    sbatch dorado_array.sbatch")
    return 0


# =============================================================================
# verify
# =============================================================================

def cmd_verify(args, config: Config) -> int:
    source = Pod5Source(args.input, pod5_bin=config.get("tools.pod5", "pod5"))
    source.check()

    output_dir = Path(args.output_dir or config.get("split.output_dir", "chunks"))
    dedup = filter_singletons(count_read_ids(source.iter_read_ids()))
    final = verify_outputs(source, output_dir, dedup.singletons)

    print_header(f"Chunk verification: {output_dir}")
    print_table(
        ["Chunk", "Size", "Reads", "Unique"],
        [
            [f["file"], format_size(f["size_bytes"]), format_count(f["total"]), format_count(f["unique"])]
            for f in final.files
        ],
        alignments=["l", "r", "r", "r"],
    )
    print_item("Singleton reads in input", format_count(len(dedup.singletons)))
    print_item("Total reads in all chunks", format_count(final.total_reads))

    if args.json:
        save_json(args.json, {"reads": dedup.to_dict(), "final_verification": final.to_dict()})

    if final.clean:
        print_success("All chunks are clean and cover every singleton read")
        return 0
    for issue in final.issues:
        print_error(issue)
    return 1


# =============================================================================
# convert / basecall / slurm / fastq
# =============================================================================

def cmd_convert(args, config: Config) -> int:
    output = convert_fast5(
        args.fast5_dir,
        args.output,
        recursive=not args.no_recursive,
        pod5_bin=config.get("tools.pod5", "pod5"),
    )
    print_success(f"Conversion complete: {output} ({format_size(output.stat().st_size)})")
    return 0


def _basecall_settings(args, config: Config) -> BasecallSettings:
    return BasecallSettings.from_config(
        config,
        model=args.model,
        models_directory=args.models_directory,
        modified_bases=args.modified_bases,
        device=args.device,
        min_reads=args.min_reads,
    )


def cmd_basecall(args, config: Config) -> int:
    settings = _basecall_settings(args, config)

    if args.all:
        chunks = list_chunk_files(args.chunks_dir)
        if not chunks:
            print_error(f"No POD5 chunks found in {args.chunks_dir}")
            return 1
    else:
        chunks = [resolve_task_chunk(args.chunks_dir, args.task_id)]

    results = []
    for chunk in chunks:
        results.append(basecall_chunk(chunk, args.output_dir, settings))

    for result in results:
        status = "skipped" if result.skipped else "done"
        print_success(f"{result.output.name}: {format_count(result.reads)} reads ({status})")
        for warning in result.warnings:
            print_warning(f"{result.output.name}: {warning}")

    if args.json:
        save_json(args.json, [r.to_dict() for r in results])
    return 0


def cmd_slurm(args, config: Config) -> int:
    num_chunks = len(list_chunk_files(args.chunks_dir))
    if num_chunks == 0:
        print_error(f"No POD5 chunks found in {args.chunks_dir}")
        return 1

    script = generate_slurm_array_script(
        Path(args.chunks_dir).resolve(),
        Path(args.output_dir).resolve(),
        num_chunks,
        config,
        job_name=args.job_name,
        config_file=Path(args.config).resolve() if args.config else None,
        setup_commands=args.setup or [],
    )
    Path(args.output).write_text(script)
    print_success(f"SLURM script written: {args.output} ({num_chunks} array tasks)")
    print("  Create the log directory first: mkdir -p logs")
    print(f"  Submit with: sbatch {args.output}")
    return 0


def cmd_fastq(args, config: Config) -> int:
    tags = args.tags.split(",") if args.tags else config.get("fastq.tags", [])
    batch = bam_to_fastq(
        args.bam_dir,
        args.output_dir,
        tags=tags,
        workers=args.workers or config.get("fastq.workers", 4),
        samtools_bin=config.get("tools.samtools", "samtools"),
    )
    for result in batch.successes():
        print_success(f"{Path(result.task_id).name} -> {result.result}")
    for result in batch.failures():
        print_error(f"{Path(result.task_id).name}: {result.error}")
    print_item("Converted", f"{batch.succeeded}/{batch.total}")
    return 0 if batch.failed == 0 else 1


# =============================================================================
# Main
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="podsplit",
        description="Split POD5 files into chunks of non-duplicated reads and drive per-chunk basecalling",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Usage:", 1)[1] if __doc__ else None,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", metavar="FILE", help="YAML configuration file")
    add_logging_args(parser)

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("split", help="Split a POD5 file into chunks of singleton reads")
    p.add_argument("input", nargs="?", default="input.pod5", help="Input POD5 file (default: input.pod5)")
    p.add_argument("batch_size", nargs="?", help="Reads per chunk (default: 1000000)")
    p.add_argument("output_dir", nargs="?", help="Output directory (default: chunks)")
    p.add_argument("--timeout", type=float, help="Seconds allowed per chunk extraction (default: 600)")
    p.add_argument("--strict", action="store_true", help="Treat read count mismatches as failures")
    p.add_argument("--workers", type=int, help="Extract chunks concurrently (default: 1, sequential)")
    p.add_argument("--keep-temp", action="store_true", help="Keep staged files of failed chunks")
    p.add_argument("--external-sort", action="store_true",
                   help="Deduplicate with an on-disk sort instead of an in-memory table")
    p.add_argument("--run-size", type=int, default=DEFAULT_RUN_SIZE,
                   help=f"Read IDs per sorted run with --external-sort (default: {DEFAULT_RUN_SIZE})")
    p.add_argument("--json", metavar="FILE", help="Write the run summary as JSON")
    p.set_defaults(func=cmd_split)

    p = sub.add_parser("verify", help="Check existing chunks against the input")
    p.add_argument("output_dir", nargs="?", help="Chunk directory (default: chunks)")
    p.add_argument("--input", "-i", required=True, help="Input POD5 file the chunks came from")
    p.add_argument("--json", metavar="FILE", help="Write the verification as JSON")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("convert", help="Convert a FAST5 directory to one POD5 file")
    p.add_argument("fast5_dir", help="Directory containing FAST5 files")
    p.add_argument("output", help="Output POD5 file")
    p.add_argument("--no-recursive", action="store_true", help="Do not search subdirectories")
    p.set_defaults(func=cmd_convert)

    p = sub.add_parser("basecall", help="Basecall one chunk (or all) with dorado")
    p.add_argument("chunks_dir", help="Directory of POD5 chunks")
    p.add_argument("output_dir", help="Directory for BAM output")
    p.add_argument("--task-id", type=int, help="1-based chunk number (default: $SLURM_ARRAY_TASK_ID)")
    p.add_argument("--all", action="store_true", help="Process every chunk in order")
    p.add_argument("--model", help="dorado model name")
    p.add_argument("--models-directory", help="dorado models directory")
    p.add_argument("--modified-bases", nargs="+", help="Modified bases to call (e.g., 6mA 5mCG_5hmCG)")
    p.add_argument("--device", help="dorado device (default: cuda:all)")
    p.add_argument("--min-reads", type=int, help="Reads needed to accept an existing BAM")
    p.add_argument("--json", metavar="FILE", help="Write results as JSON")
    p.set_defaults(func=cmd_basecall)

    p = sub.add_parser("slurm", help="Write a SLURM array script with one task per chunk")
    p.add_argument("chunks_dir", help="Directory of POD5 chunks")
    p.add_argument("output_dir", help="Directory for BAM output")
    p.add_argument("--output", "-o", required=True, help="Script file to write")
    p.add_argument("--job-name", default="dorado_chunks", help="SLURM job name")
    p.add_argument("--setup", action="append", metavar="CMD",
                   help="Shell line to run before basecalling (repeatable)")
    p.set_defaults(func=cmd_slurm)

    p = sub.add_parser("fastq", help="Convert BAM files to gzipped FASTQ keeping MM/ML tags")
    p.add_argument("bam_dir", help="Directory of BAM files")
    p.add_argument("output_dir", nargs="?", default="fastq", help="Output directory (default: fastq)")
    p.add_argument("--workers", type=int, help="Parallel conversions (default: 4)")
    p.add_argument("--tags", help="Comma-separated tags to keep (default: MM,ML)")
    p.set_defaults(func=cmd_fastq)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        verbose=args.verbose,
        quiet=args.quiet,
        debug=args.debug,
        log_file=args.log_file,
    )

    try:
        config = load_config(args.config)
        return args.func(args, config)
    except PodsplitError as e:
        return handle_error(e, verbose=args.verbose or args.debug)
    except KeyboardInterrupt:
        print_error("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
