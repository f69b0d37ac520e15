"""Main entry point for the meegflow package."""

import argparse
import asyncio
import sys
from pathlib import Path

from meegflow.core.exceptions import PipelineError
from meegflow.core.pipeline import Pipeline
from meegflow.utils.logging import message

DEFAULT_CONFIG = "configs/meegflow_config.yaml"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="meegflow MEG/EEG Processing Pipeline")
    parser.add_argument("--task", type=str, help="Task to run (e.g., FaceRecognition)")
    parser.add_argument("--data", type=str, help="Path to data file or directory")
    parser.add_argument("--config", type=str, default=DEFAULT_CONFIG, help="Path to config file")
    parser.add_argument("--output", type=str, default="output", help="Output directory")
    parser.add_argument(
        "--start-from",
        type=str,
        default=None,
        help="Resume from this checkpoint (e.g., post_preprocessing)",
    )
    parser.add_argument(
        "--pattern", type=str, default="*.fif", help="Glob pattern when --data is a directory"
    )
    parser.add_argument("--recursive", action="store_true", help="Search subdirectories")
    parser.add_argument(
        "--max-concurrent",
        type=int,
        default=1,
        help="Files processed at the same time when --data is a directory",
    )
    parser.add_argument("--verbose", type=str, default=None, help="Log level (e.g., debug)")
    parser.add_argument("--list-tasks", action="store_true", help="List configured tasks")
    parser.add_argument(
        "--list-stage-files", action="store_true", help="List configured checkpoints"
    )
    return parser


def main(argv=None) -> int:
    """Main entry point for the meegflow package."""
    parser = build_parser()
    args = parser.parse_args(argv)

    pipeline = Pipeline(output_dir=args.output, config=args.config, verbose=args.verbose)

    if args.list_tasks or args.list_stage_files:
        if args.list_tasks:
            print("\n".join(pipeline.list_tasks()))
        if args.list_stage_files:
            print("\n".join(pipeline.list_stage_files()))
        return 0

    if not args.task or not args.data:
        parser.error("--task and --data are required")

    input_path = Path(args.data)
    if input_path.is_dir():
        if args.max_concurrent > 1:
            results = asyncio.run(
                pipeline.process_directory_async(
                    directory=input_path,
                    task=args.task,
                    pattern=args.pattern,
                    sub_directories=args.recursive,
                    max_concurrent=args.max_concurrent,
                    start_from=args.start_from,
                )
            )
        else:
            results = pipeline.process_directory(
                directory=input_path,
                task=args.task,
                pattern=args.pattern,
                recursive=args.recursive,
                start_from=args.start_from,
            )
        return 1 if any(result is None for result in results.values()) else 0

    try:
        result = pipeline.process_file(
            file_path=input_path, task=args.task, start_from=args.start_from
        )
    except PipelineError as e:
        message(
            "error",
            f"Processing stopped: {e} (last stage: {e.last_stage}, "
            f"last checkpoint: {e.last_checkpoint})",
        )
        return 1
    except Exception as e:  # pylint: disable=broad-except
        message("error", f"Processing failed: {str(e)}")
        return 1
    message("info", f"Run finished with state '{result.state.value}'")
    return 0


if __name__ == "__main__":
    sys.exit(main())
