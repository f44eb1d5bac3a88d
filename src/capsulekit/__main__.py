"""capsulekit command line.

    python -m capsulekit list
    python -m capsulekit generate-ir kjv
    python -m capsulekit convert kjv osis -v

Verbosity flags (-q/-v/-d) go before the subcommand. Every command exits
with status 1 and the error message on failure.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from capsulekit import __version__
from capsulekit.convert import ConversionResult
from capsulekit.core.config import ConfigResolver
from capsulekit.core.diagnostics import install_jsonl_sink
from capsulekit.core.errors import CapsuleKitError
from capsulekit.core.logging import apply_logging_policy, get_logger
from capsulekit.core.settings import Settings
from capsulekit.service import CapsuleService

log = get_logger("capsulekit")


def _emit(args: argparse.Namespace, data: Any, lines: list[str]) -> None:
    if args.json:
        print(json.dumps(data, indent=2, ensure_ascii=False))
    else:
        for line in lines:
            print(line)


def _result(args: argparse.Namespace, result: ConversionResult) -> int:
    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    elif result.success:
        print(result.message)
    else:
        log.error(result.message)
    return 0 if result.success else 1


# --- commands ----------------------------------------------------------------


def cmd_list(svc: CapsuleService, args: argparse.Namespace) -> int:
    capsules = svc.list_capsules()
    lines = [f"{c.id:<24} {c.size_human:>10}  {c.format:<8} {c.name}" for c in capsules]
    if not capsules:
        lines = [f"No capsules in {svc.settings.capsules_dir}"]
    _emit(args, [c.to_dict() for c in capsules], lines)
    return 0


def cmd_info(svc: CapsuleService, args: argparse.Namespace) -> int:
    info = svc.describe(args.capsule)
    capsule = info["capsule"]
    lines = [
        f"Capsule:   {capsule['name']} ({capsule['size_human']})",
        f"Format:    {capsule['format']}",
        f"CAS:       {'yes' if info['is_cas'] else 'no'}",
        f"IR:        {'yes' if info['has_ir'] else 'no'}",
    ]
    manifest = info["manifest"]
    if manifest:
        lines.append(f"Title:     {manifest.get('title') or '-'}")
        lines.append(f"Language:  {manifest.get('language') or '-'}")
        lines.append(f"Source:    {manifest.get('source_format') or '-'}")
    lines.append(f"Artifacts: {len(info['artifacts'])}")
    lines.extend(f"  {a['id']} ({a['size']} bytes)" for a in info["artifacts"])
    _emit(args, info, lines)
    return 0


def cmd_artifact(svc: CapsuleService, args: argparse.Namespace) -> int:
    data, content_type = svc.read_artifact(args.capsule, args.artifact)
    if args.output:
        Path(args.output).write_bytes(data)
        log.info(f"{args.artifact} ({content_type}, {len(data)} bytes) written to {args.output}")
    else:
        sys.stdout.buffer.write(data)
        sys.stdout.flush()
    return 0


def cmd_generate_ir(svc: CapsuleService, args: argparse.Namespace) -> int:
    return _result(args, svc.generate_ir(args.capsule))


def cmd_convert(svc: CapsuleService, args: argparse.Namespace) -> int:
    return _result(args, svc.convert(args.capsule, args.target))


def cmd_convert_cas(svc: CapsuleService, args: argparse.Namespace) -> int:
    return _result(args, svc.convert_cas(args.capsule))


def cmd_install(svc: CapsuleService, args: argparse.Namespace) -> int:
    info = svc.install(Path(args.archive))
    _emit(args, info.to_dict(), [f"Installed {info.name} ({info.size_human})"])
    return 0


def cmd_delete(svc: CapsuleService, args: argparse.Namespace) -> int:
    path = svc.delete(args.capsule)
    _emit(args, {"deleted": str(path)}, [f"Deleted {path.name}"])
    return 0


def cmd_plugins(svc: CapsuleService, args: argparse.Namespace) -> int:
    plugins = svc.list_plugins(args.kind)
    lines = [
        f"{p.plugin_id:<22} {p.version:<8} {p.source:<9} in={','.join(p.inputs) or '-'} "
        f"out={','.join(p.outputs) or '-'}"
        for p in plugins
    ]
    _emit(args, [p.to_dict() for p in plugins], lines)
    return 0


def cmd_bibles(svc: CapsuleService, args: argparse.Namespace) -> int:
    if args.manageable:
        installed, installable = svc.manageable_bibles()
        lines = ["Installed:"]
        lines.extend(f"  {e.id:<22} {e.format}" for e in installed)
        lines.append("Installable:")
        lines.extend(
            f"  {e.id:<22} {e.format}{' (CAS)' if e.is_cas else ''}" for e in installable
        )
        data: Any = {
            "installed": [e.to_dict() for e in installed],
            "installable": [e.to_dict() for e in installable],
        }
        _emit(args, data, lines)
        return 0

    bibles = svc.list_bibles()
    lines = [
        f"{b.id:<22} {b.language or '-':<6} {b.book_count:>3} books  {b.title}"
        + (f"  [{', '.join(b.features)}]" if b.features else "")
        for b in bibles
    ]
    _emit(args, [b.to_dict() for b in bibles], lines or ["No Bibles with IR found"])
    return 0


def cmd_sword_modules(svc: CapsuleService, args: argparse.Namespace) -> int:
    modules = svc.list_sword_modules()
    lines = [f"{m.id:<22} {m.language or '-':<6} {m.name}" for m in modules]
    _emit(
        args,
        [m.to_dict() for m in modules],
        lines or [f"No SWORD Bible modules in {svc.settings.sword_dir}"],
    )
    return 0


Command = Callable[[CapsuleService, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="capsulekit", description="Capsule content management")
    parser.add_argument("--version", action="version", version=f"capsulekit {__version__}")
    level = parser.add_mutually_exclusive_group()
    level.add_argument("-q", "--quiet", dest="level", action="store_const", const="quiet")
    level.add_argument("-v", "--verbose", dest="level", action="store_const", const="verbose")
    level.add_argument("-d", "--debug", dest="level", action="store_const", const="debug")
    parser.add_argument("--config", type=Path, help="user config file (YAML)")
    parser.add_argument("--capsules-dir", help="capsule directory")
    parser.add_argument("--plugins-dir", help="external plugin directory")
    parser.add_argument("--posture", choices=("permissive", "restricted"), help="plugin posture")
    parser.add_argument("--json", action="store_true", help="machine-readable output")

    sub = parser.add_subparsers(dest="command", required=True)

    def add(name: str, fn: Command, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.set_defaults(func=fn)
        return p

    add("list", cmd_list, "list capsules")
    add("info", cmd_info, "show manifest and artifacts").add_argument("capsule")
    p = add("artifact", cmd_artifact, "print one archive member")
    p.add_argument("capsule")
    p.add_argument("artifact")
    p.add_argument("-o", "--output", help="write to a file instead of stdout")
    add("generate-ir", cmd_generate_ir, "add IR to a capsule").add_argument("capsule")
    p = add("convert", cmd_convert, "rewrite a capsule in another format")
    p.add_argument("capsule")
    p.add_argument("target", help="target format, e.g. osis, usfm, usx, json")
    add("convert-cas", cmd_convert_cas, "restore a CAS capsule as plain files").add_argument(
        "capsule"
    )
    add("install", cmd_install, "copy an archive into the capsule directory").add_argument(
        "archive"
    )
    add("delete", cmd_delete, "delete a capsule").add_argument("capsule")
    add("plugins", cmd_plugins, "list plugins").add_argument("--kind")
    add("bibles", cmd_bibles, "list Bibles with IR").add_argument(
        "--manageable", action="store_true", help="installed vs installable capsules"
    )
    add("sword-modules", cmd_sword_modules, "list SWORD Bible modules")
    return parser


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.level:
        overrides["logging.level"] = args.level
    if args.capsules_dir:
        overrides["capsules_dir"] = args.capsules_dir
    if args.plugins_dir:
        overrides["plugins.dir"] = args.plugins_dir
    if args.posture:
        overrides["plugins.posture"] = args.posture
    return overrides


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        resolver = ConfigResolver(cli_args=_cli_overrides(args), user_config_path=args.config)
        settings = Settings.from_resolver(resolver)
    except CapsuleKitError as e:
        log.error(str(e))
        return 1

    apply_logging_policy(
        settings.logging_level, colors=settings.logging_colors, json_output=args.json
    )
    if settings.diagnostics_enabled:
        install_jsonl_sink(settings.state_dir / "diagnostics.jsonl")

    try:
        svc = CapsuleService.from_settings(settings)
    except CapsuleKitError as e:
        log.error(str(e))
        return 1

    try:
        return args.func(svc, args)
    except CapsuleKitError as e:
        log.error(str(e))
        return 1
    finally:
        svc.close()


if __name__ == "__main__":
    sys.exit(main())
