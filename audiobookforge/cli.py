"""Command-line interface for audiobookforge."""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from audiobookforge import __version__
from audiobookforge.config import Settings, get_config


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--state",
        default=None,
        help="JSON state file for projects and jobs (default: <work-dir>/state.json)",
    )
    parser.add_argument(
        "-w", "--work-dir",
        default=None,
        help="Directory for intermediate files",
    )
    parser.add_argument(
        "-o", "--output-dir",
        default=None,
        help="Directory for mastered chapters when no S3 bucket is configured",
    )
    parser.add_argument(
        "-j", "--concurrency",
        type=int,
        default=None,
        help="Chapters synthesized in parallel (max 4)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audiobookforge",
        description="Turn a manuscript into ACX-ready mastered audiobook chapters",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    synth = sub.add_parser("synthesize", help="Synthesize and master a manuscript")
    synth.add_argument("manuscript", help="Text file split at chapter headings, or a directory of chapter files")
    synth.add_argument("-t", "--title", default=None, help="Book title (default: manuscript name)")
    synth.add_argument("-a", "--author", default="", help="Author, written to the ID3 artist tag")
    synth.add_argument(
        "-p", "--provider",
        default=settings.default_provider,
        help=f"TTS provider (default: {settings.default_provider})",
    )
    synth.add_argument("-v", "--voice", required=True, help="Voice id (see the 'voices' command)")
    synth.add_argument(
        "-r", "--rate",
        default=settings.default_speech_rate,
        help=f"Speech rate, e.g. 90%% or slow (default: {settings.default_speech_rate})",
    )
    synth.add_argument(
        "-l", "--language",
        default=settings.default_language,
        help=f"Manuscript language (default: {settings.default_language})",
    )
    synth.add_argument("--year", default=None, help="Year for the ID3 tags")
    synth.add_argument("--cover", default=None, help="Cover image embedded in every chapter")
    synth.add_argument("--no-deess", action="store_true", help="Skip the de-esser stage")
    _add_common(synth)

    voices = sub.add_parser("voices", help="List the voices of a provider")
    voices.add_argument(
        "-p", "--provider",
        default=settings.default_provider,
        help=f"TTS provider (default: {settings.default_provider})",
    )
    voices.add_argument("-l", "--language", default=None, help="Language filter, e.g. es-ES")
    voices.add_argument("--verbose", action="store_true", help="Enable debug logging")

    recover = sub.add_parser("recover", help="Resume projects interrupted by a restart")
    recover.add_argument(
        "--no-resume",
        action="store_true",
        help="Only reconcile job records; do not synthesize re-queued chapters",
    )
    _add_common(recover)
    return parser


def _settings_for(args, settings: Settings) -> Settings:
    update = {}
    if getattr(args, "work_dir", None):
        update["work_dir"] = Path(args.work_dir)
    if getattr(args, "output_dir", None):
        update["output_dir"] = Path(args.output_dir)
    return settings.model_copy(update=update) if update else settings


def _state_path(args, settings: Settings) -> Path:
    return Path(args.state) if args.state else Path(settings.work_dir) / "state.json"


def build_pipeline(settings: Settings, storage, concurrency: Optional[int] = None,
                   on_progress=None, de_esser: bool = True):
    """Wire storage, providers, mastering and blob store into a manager and scheduler."""
    from audiobookforge.audio.mastering import MasteringEngine
    from audiobookforge.blobstore import get_blob_store
    from audiobookforge.jobs import SynthesisJobManager
    from audiobookforge.models import MasteringOptions
    from audiobookforge.scheduler import ChapterScheduler
    from audiobookforge.tts import ProviderRegistry

    manager = SynthesisJobManager(
        storage,
        ProviderRegistry(settings),
        MasteringEngine(MasteringOptions(de_esser=de_esser), settings=settings),
        get_blob_store(settings),
        settings=settings,
        on_progress=on_progress,
    )
    return manager, ChapterScheduler(manager, settings=settings, concurrency=concurrency)


def _list_voices(args, settings: Settings) -> int:
    from audiobookforge.tts import get_provider

    provider = get_provider(args.provider, settings)
    provider.initialize()
    voices = provider.list_voices(args.language)
    if not voices:
        print(f"No voices found for language '{args.language}' with provider '{args.provider}'")
        return 0
    print(f"\nAvailable voices ({provider.name}, language: {args.language or 'all'}):\n")
    for v in voices:
        gender = v.get("gender", "")
        print(f"  {v['name']:<35} {v['language']:<10} {gender}")
    return 0


def _synthesize(args, settings: Settings) -> int:
    from audiobookforge.audio.audio_utils import check_ffmpeg
    from audiobookforge.manuscript import load_manuscript
    from audiobookforge.models import ProjectStatus
    from audiobookforge.progress import ProgressReporter
    from audiobookforge.storage import JsonFileStorage

    manuscript = Path(args.manuscript)
    if not manuscript.exists():
        logging.error("Manuscript not found: %s", manuscript)
        return 1

    check_ffmpeg()
    chapters = load_manuscript(manuscript)

    storage = JsonFileStorage(_state_path(args, settings))
    project = storage.create_project(
        title=args.title or manuscript.stem,
        voice_id=args.voice,
        provider=args.provider,
        author=args.author,
        language=args.language,
        speech_rate=args.rate,
        year=args.year,
        cover_image_path=args.cover,
    )
    for number, chapter in enumerate(chapters, start=1):
        storage.add_chapter(project.id, number, chapter.title, chapter.text, chapter.markup)

    reporter = ProgressReporter(len(chapters))
    _, scheduler = build_pipeline(
        settings, storage, args.concurrency, on_progress=reporter, de_esser=not args.no_deess,
    )
    try:
        result = scheduler.run_project(project.id)
    finally:
        reporter.close()

    project = storage.get_project(project.id)
    for job in sorted(storage.latest_jobs(project.id).values(), key=lambda j: j.chapter_id):
        if job.final_audio_url:
            print(f"  {storage.get_chapter(job.chapter_id).title}: {job.final_audio_url}")
        if job.warning:
            print(f"    warning: {job.warning}")

    if result.failed_chapters:
        print(f"\nFailed chapters: {', '.join(result.failed_chapters)}")
    print(f"\nProject {project.id} '{project.title}': {project.status.value} "
          f"({project.completed_chapters}/{project.total_chapters} chapters mastered)")
    return 1 if project.status == ProjectStatus.FAILED else 0


def _recover(args, settings: Settings) -> int:
    from audiobookforge.recovery import RecoveryService
    from audiobookforge.storage import JsonFileStorage

    state = _state_path(args, settings)
    if not state.exists():
        logging.error("State file not found: %s", state)
        return 1

    storage = JsonFileStorage(state)
    manager, scheduler = build_pipeline(settings, storage, args.concurrency)
    report = RecoveryService(manager, None if args.no_resume else scheduler).recover()

    print(f"Recovered: {report.recovered}  Failed: {report.failed}  "
          f"Pending: {report.pending}  Interrupted: {report.interrupted}")
    if report.queued_projects:
        print(f"Re-queued projects: {', '.join(map(str, report.queued_projects))}")
    if report.completed_projects:
        print(f"Completed projects: {', '.join(map(str, report.completed_projects))}")
    if report.failed_projects:
        print(f"Failed projects: {', '.join(map(str, report.failed_projects))}")
    return 0


def main(argv: list[str] | None = None) -> None:
    base_settings = get_config()
    parser = build_parser(base_settings)
    args = parser.parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else getattr(logging, base_settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    settings = _settings_for(args, base_settings)
    commands = {"synthesize": _synthesize, "voices": _list_voices, "recover": _recover}

    try:
        code = commands[args.command](args, settings)
    except KeyboardInterrupt:
        print("\n\nInterrupted. Run 'audiobookforge recover' to resume.")
        sys.exit(1)
    except Exception as e:
        logging.error("Error: %s", e)
        if args.verbose:
            logging.exception("Details:")
        sys.exit(1)

    sys.exit(code)


if __name__ == "__main__":
    main()
