"""Training data for the system prompt: knowledge files, product summary and social proof assets.

The manifest is a YAML file::

    training_dir: training            # .txt/.md appended to the knowledge text, .json/.yaml kept as structured data
    social_proofs_dir: assets/social-proofs
    social_proofs:
      - id: case_acme
        file: acme.jpg
        description: Depoimento da Acme
        tags: [varejo]

Relative paths are resolved against the manifest's directory. Files in the social proofs
directory that the manifest does not list are picked up with an ``auto_`` id.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from salesbot.logging_config import get_logger

logger = get_logger("training_context")

MAX_FILE_SIZES = {
    ".txt": 5 * 1024 * 1024,
    ".md": 5 * 1024 * 1024,
    ".json": 10 * 1024 * 1024,
    ".yaml": 10 * 1024 * 1024,
    ".yml": 10 * 1024 * 1024,
}

_MEDIA_TYPES = {
    "image": {".jpg", ".jpeg", ".png", ".gif", ".webp"},
    "video": {".mp4", ".mov", ".webm", ".avi", ".mkv"},
    "audio": {".mp3", ".wav", ".ogg", ".m4a"},
    "document": {".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx"},
}


def detect_media_type(filename: str) -> str:
    ext = Path(filename).suffix.lower()
    for media_type, extensions in _MEDIA_TYPES.items():
        if ext in extensions:
            return media_type
    return "unknown"


@dataclass(frozen=True)
class SocialProofAsset:
    id: str
    type: str
    description: str
    path: Path
    tags: tuple[str, ...] = ()

    @property
    def filename(self) -> str:
        return self.path.name


@dataclass
class TrainingContext:
    product_summary: str = ""
    knowledge_text: str = ""
    specific_data: dict[str, Any] = field(default_factory=dict)
    social_proofs: list[SocialProofAsset] = field(default_factory=list)
    social_proofs_dir: Optional[Path] = None

    def find_social_proof(self, asset_id: str) -> Optional[SocialProofAsset]:
        for asset in self.social_proofs:
            if asset.id == asset_id:
                return asset
        return None

    def social_proof_lines(self) -> list[str]:
        return [f"{asset.type}: {asset.description} ({asset.id})" for asset in self.social_proofs]


def _read_structured(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        if path.suffix.lower() == ".json":
            return json.load(handle)
        return yaml.safe_load(handle)


def load_knowledge(training_dir: Path) -> tuple[str, dict[str, Any]]:
    """Read every supported file in ``training_dir``. Unreadable files are logged and skipped."""
    if not training_dir.is_dir():
        logger.warning("Training directory not found", extra={"context": {"path": str(training_dir)}})
        return "", {}

    sections: list[str] = []
    specific: dict[str, Any] = {}
    for path in sorted(training_dir.iterdir()):
        ext = path.suffix.lower()
        if not path.is_file() or ext not in MAX_FILE_SIZES:
            continue
        size = path.stat().st_size
        if size > MAX_FILE_SIZES[ext]:
            logger.warning(
                "Skipping oversized training file",
                extra={"context": {"file": path.name, "size": size, "limit": MAX_FILE_SIZES[ext]}},
            )
            continue
        try:
            if ext in (".txt", ".md"):
                sections.append(f"--- {path.name} ---\n{path.read_text(encoding='utf-8').strip()}")
            else:
                specific[path.stem] = _read_structured(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Failed to read training file {path.name}: {e}")

    logger.info(
        "Training data loaded",
        extra={"context": {"text_files": len(sections), "structured_files": len(specific)}},
    )
    return "\n\n".join(sections), specific


def load_social_proofs(directory: Path, entries: list[dict]) -> list[SocialProofAsset]:
    if not directory.is_dir():
        logger.warning("Social proofs directory not found", extra={"context": {"path": str(directory)}})
        return []

    files = {path.name: path for path in directory.iterdir() if path.is_file()}
    assets: list[SocialProofAsset] = []
    listed: set[str] = set()
    for entry in entries:
        filename = str(entry.get("file") or "")
        if filename not in files:
            logger.warning("Social proof file not found", extra={"context": {"file": filename}})
            continue
        listed.add(filename)
        assets.append(
            SocialProofAsset(
                id=str(entry.get("id") or Path(filename).stem),
                type=str(entry.get("type") or detect_media_type(filename)),
                description=str(entry.get("description") or "Sem descrição"),
                path=files[filename],
                tags=tuple(str(tag) for tag in entry.get("tags") or ()),
            )
        )

    for name in sorted(files):
        if name in listed or detect_media_type(name) == "unknown":
            continue
        assets.append(
            SocialProofAsset(
                id=f"auto_{Path(name).stem}",
                type=detect_media_type(name),
                description=f"Auto-detectado: {name}",
                path=files[name],
            )
        )
    return assets


def load_training_context(manifest_path: Optional[str], product_summary: str = "") -> TrainingContext:
    if not manifest_path:
        return TrainingContext(product_summary=product_summary)

    manifest_file = Path(manifest_path)
    if not manifest_file.exists():
        logger.warning("Training manifest not found", extra={"context": {"path": manifest_path}})
        return TrainingContext(product_summary=product_summary)

    with manifest_file.open("r", encoding="utf-8") as handle:
        manifest = yaml.safe_load(handle) or {}
    base_dir = manifest_file.resolve().parent

    knowledge_text, specific = "", {}
    if manifest.get("training_dir"):
        knowledge_text, specific = load_knowledge(base_dir / manifest["training_dir"])

    social_proofs: list[SocialProofAsset] = []
    social_proofs_dir = None
    if manifest.get("social_proofs_dir"):
        social_proofs_dir = base_dir / manifest["social_proofs_dir"]
        entries = [e for e in manifest.get("social_proofs") or [] if isinstance(e, dict)]
        social_proofs = load_social_proofs(social_proofs_dir, entries)

    return TrainingContext(
        product_summary=product_summary,
        knowledge_text=knowledge_text,
        specific_data=specific,
        social_proofs=social_proofs,
        social_proofs_dir=social_proofs_dir,
    )
