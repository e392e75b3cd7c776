"""
Resolve which child(ren) and project a payment row funds.

Structured metadata always outranks label parsing. Label parsing runs an
ordered chain of named strategies over the row's free-text labels; each
strategy answers ``Found``, ``NotFound`` or ``Ambiguous`` and the first
non-``NotFound`` answer wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Collection, Generic, Protocol, Sequence, TypeVar, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from donation_app.importer.adapters import ImportRow
from donation_app.models import Child, Project, ProjectType, Sponsorship

T = TypeVar("T")

DEFAULT_PROJECT_TITLE = "General Donation"
SPONSOR_PROJECT_PREFIX = "Sponsor "

METADATA_CHILD_NOT_FOUND = "metadata child reference not found"
METADATA_PROJECT_NOT_FOUND = "metadata project reference not found"
SPONSORSHIP_WITHOUT_CHILD = "sponsorship label without a child name"


@dataclass(frozen=True)
class Found(Generic[T]):
    value: T


@dataclass(frozen=True)
class NotFound:
    pass


@dataclass(frozen=True)
class Ambiguous:
    reason: str


ExtractionResult = Union[Found[T], NotFound, Ambiguous]
NOT_FOUND = NotFound()


@dataclass(frozen=True)
class ProjectIntent:
    """A project inferred from label text, not yet looked up."""

    project_type: ProjectType
    title: str | None = None


@dataclass(frozen=True)
class ExtractionStrategy:
    name: str
    extract: Callable[[str], ExtractionResult]
    # Which resolution dimension the strategy feeds: "children" or "project".
    target: str


_SPONSORSHIP_RE = re.compile(r"\bsponsor(?:ship)?\b.*?\bfor\s+(?P<names>.+)$", re.IGNORECASE)
_SPONSORSHIP_PREFIX_RE = re.compile(r"^.*?\bsponsor(?:ship)?\b.*?\bfor\s+", re.IGNORECASE)
_NAME_SEPARATOR_RE = re.compile(r"\s*(?:,|&|\band\b)\s*", re.IGNORECASE)
_CAMPAIGN_RE = re.compile(r"\bdonation\s+for\s+campaign\s+(?P<number>\d+)", re.IGNORECASE)
_GENERAL_PATTERNS = (
    re.compile(r"\$\d+(?:\.\d{2})?\s*-\s*general\s+monthly\s+donation", re.IGNORECASE),
    re.compile(r"\bgeneral\s+(?:monthly\s+)?donation\b", re.IGNORECASE),
    re.compile(r"^invoice\s+[a-z0-9-]+$", re.IGNORECASE),
    re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$"),
    re.compile(r"^\d+$"),
    re.compile(r"^subscription\s+creation$", re.IGNORECASE),
    re.compile(r"captured\s+via\s+payment\s+app", re.IGNORECASE),
    re.compile(r"payment\s+for\s+stripe\s+app", re.IGNORECASE),
)
_SPONSOR_KEYWORD_RE = re.compile(r"\bsponsor(?:ship)?\b", re.IGNORECASE)


def _clean_name(token: str) -> str | None:
    token = _SPONSORSHIP_PREFIX_RE.sub("", token).strip(" \t.;:-")
    return token or None


def split_child_names(text: str) -> list[str]:
    """Split ``"Maria, Juan and Ana"`` into names, dropping repeats (case-insensitive)."""

    names: list[str] = []
    seen: set[str] = set()
    for piece in _NAME_SEPARATOR_RE.split(text):
        name = _clean_name(piece)
        if name is None:
            continue
        key = name.casefold()
        if key in seen:
            continue
        seen.add(key)
        names.append(name)
    return names


def extract_sponsorship_children(text: str) -> ExtractionResult:
    match = _SPONSORSHIP_RE.search(text)
    names = split_child_names(match.group("names")) if match is not None else []
    if names:
        return Found(names)
    if _SPONSOR_KEYWORD_RE.search(text):
        return Ambiguous(SPONSORSHIP_WITHOUT_CHILD)
    return NOT_FOUND


def extract_project_intent(text: str) -> ExtractionResult:
    campaign = _CAMPAIGN_RE.search(text)
    if campaign is not None:
        return Found(ProjectIntent(ProjectType.CAMPAIGN, f"Campaign {campaign.group('number')}"))
    stripped = text.strip()
    if any(pattern.search(stripped) for pattern in _GENERAL_PATTERNS):
        return Found(ProjectIntent(ProjectType.GENERAL))
    return NOT_FOUND


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    ExtractionStrategy("sponsorship_children", extract_sponsorship_children, target="children"),
    ExtractionStrategy("project_intent", extract_project_intent, target="project"),
)


@dataclass(frozen=True)
class LabelMatch:
    strategy: str
    result: ExtractionResult


def run_strategies(
    labels: Sequence[str],
    strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
) -> LabelMatch | None:
    """Return the first ``Found``/``Ambiguous`` answer across labels, most specific label first."""

    for text in labels:
        for strategy in strategies:
            result = strategy.extract(text)
            if isinstance(result, NotFound):
                continue
            return LabelMatch(strategy=strategy.name, result=result)
    return None


class AssociationRepository(Protocol):
    """Persistence port used by the resolver and the project reuse policy."""

    def get_child(self, child_id: int) -> Child | None: ...

    def find_child(self, name: str) -> Child | None: ...

    def create_child(self, name: str) -> Child: ...

    def get_project(self, project_id: int) -> Project | None: ...

    def find_project(self, title: str, project_type: ProjectType | None = None) -> Project | None: ...

    def create_project(self, title: str, project_type: ProjectType, *, system: bool = False) -> Project: ...

    def projects_sponsoring_child(self, child: Child) -> Sequence[Project]: ...


def sponsorship_project_title(child_name: str) -> str:
    return f"{SPONSOR_PROJECT_PREFIX}{child_name.strip()}"


def resolve_sponsorship_project(repository: AssociationRepository, child: Child) -> tuple[Project, bool]:
    """
    Return ``(project, created)`` for a child's sponsorship project.

    Reuses the project of an existing sponsorship of the child when it is a
    sponsorship project, then a sponsorship project titled ``Sponsor <Name>``,
    and only then creates one.
    """

    for project in repository.projects_sponsoring_child(child):
        if project.is_sponsorship:
            return project, False
    title = sponsorship_project_title(child.name)
    project = repository.find_project(title, ProjectType.SPONSORSHIP)
    if project is not None:
        return project, False
    return repository.create_project(title, ProjectType.SPONSORSHIP), True


def _normalized(value: str) -> str:
    return value.strip().lower()


class SQLAlchemyAssociationRepository:
    """Session-backed repository. Lookups include archived rows so they can be restored."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_child(self, child_id: int) -> Child | None:
        return self.session.get(Child, child_id)

    def find_child(self, name: str) -> Child | None:
        stmt = select(Child).where(func.lower(func.trim(Child.name)) == _normalized(name)).order_by(Child.id)
        return self.session.execute(stmt).scalars().first()

    def create_child(self, name: str) -> Child:
        child = Child(name=name.strip())
        self.session.add(child)
        self.session.flush()
        return child

    def get_project(self, project_id: int) -> Project | None:
        return self.session.get(Project, project_id)

    def find_project(self, title: str, project_type: ProjectType | None = None) -> Project | None:
        stmt = select(Project).where(func.lower(func.trim(Project.title)) == _normalized(title))
        if project_type is not None:
            stmt = stmt.where(Project.project_type == project_type)
        return self.session.execute(stmt.order_by(Project.id)).scalars().first()

    def create_project(self, title: str, project_type: ProjectType, *, system: bool = False) -> Project:
        project = Project(title=title.strip(), project_type=project_type, system=system)
        self.session.add(project)
        self.session.flush()
        return project

    def projects_sponsoring_child(self, child: Child) -> Sequence[Project]:
        if child.id is None:
            return ()
        stmt = (
            select(Project)
            .join(Sponsorship, Sponsorship.project_id == Project.id)
            .where(Sponsorship.child_id == child.id)
            .order_by(Sponsorship.id)
        )
        return self.session.execute(stmt).scalars().unique().all()


@dataclass(frozen=True)
class FundingTarget:
    project: Project
    child: Child | None = None


@dataclass
class Association:
    """Outcome of resolving one row: funding targets plus any review reasons."""

    targets: list[FundingTarget] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    strategy: str | None = None
    children_created: int = 0
    projects_created: int = 0

    @property
    def children(self) -> list[Child]:
        return [target.child for target in self.targets if target.child is not None]

    @property
    def needs_attention_reason(self) -> str | None:
        return "; ".join(self.reasons) if self.reasons else None


# SQLite INTEGER primary keys are signed 64-bit.
MAX_RECORD_ID = 2**63 - 1


def parse_record_id(reference: str) -> int | None:
    """Return ``reference`` as a primary key when it is a plain ASCII number in range."""

    if not (reference.isascii() and reference.isdigit()):
        return None
    value = int(reference)
    return value if value <= MAX_RECORD_ID else None


def _lookup_reference(reference: str, *, by_id, by_name):
    record_id = parse_record_id(reference)
    if record_id is not None:
        found = by_id(record_id)
        if found is not None:
            return found
    return by_name(reference)


class AssociationResolver:
    """Find-or-create the child(ren) and project for a normalized row."""

    def __init__(
        self,
        repository: AssociationRepository,
        *,
        default_project_title: str = DEFAULT_PROJECT_TITLE,
        strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
    ) -> None:
        self.repository = repository
        self.default_project_title = default_project_title
        self.strategies = tuple(strategies)

    def child_key_for(self, row: ImportRow, *, pending_names: Collection[str] = ()) -> list[str]:
        """
        Child identity keys a row refers to, without writing anything.

        Used by the duplicate pre-pass. Metadata ids map to the stored child
        name so they compare equal to label-parsed names. A metadata name not
        stored yet still counts when ``pending_names`` says an earlier row of
        the same file creates it.
        """

        reference = row.metadata_child_ref
        if reference is not None:
            child = _lookup_reference(
                reference, by_id=self.repository.get_child, by_name=self.repository.find_child
            )
            if child is not None:
                return [_normalized(child.name)]
            key = _normalized(reference)
            return [key] if key in pending_names else []
        return [_normalized(name) for name in self.label_child_names(row)]

    def label_child_names(self, row: ImportRow) -> list[str]:
        """Child names label parsing would settle on for ``row``, or ``[]``."""

        match = self._label_match(row)
        if match is None or not isinstance(match.result, Found):
            return []
        if isinstance(match.result.value, ProjectIntent):
            return []
        return list(match.result.value)

    def _label_match(self, row: ImportRow) -> LabelMatch | None:
        # Label parsing only fills dimensions that metadata did not speak to.
        targets = []
        if row.metadata_child_ref is None:
            targets.append("children")
        if row.metadata_project_ref is None:
            targets.append("project")
        if not targets:
            return None
        return run_strategies(row.label_candidates, self._strategies_for(*targets))

    def _strategies_for(self, *targets: str) -> tuple[ExtractionStrategy, ...]:
        return tuple(strategy for strategy in self.strategies if strategy.target in targets)

    def resolve(self, row: ImportRow) -> Association:
        association = Association()
        children: list[Child] = []
        project: Project | None = None
        intent: ProjectIntent | None = None
        child_ref = row.metadata_child_ref
        project_ref = row.metadata_project_ref

        if child_ref is not None:
            child = _lookup_reference(child_ref, by_id=self.repository.get_child, by_name=self.repository.find_child)
            if child is None:
                association.reasons.append(METADATA_CHILD_NOT_FOUND)
            else:
                children.append(child)

        if project_ref is not None:
            project = _lookup_reference(
                project_ref, by_id=self.repository.get_project, by_name=self.repository.find_project
            )
            if project is None:
                association.reasons.append(METADATA_PROJECT_NOT_FOUND)

        match = self._label_match(row)
        if match is not None:
            association.strategy = match.strategy
            if isinstance(match.result, Ambiguous):
                association.reasons.append(match.result.reason)
            elif isinstance(match.result.value, ProjectIntent):
                intent = match.result.value
            else:
                for name in match.result.value:
                    child = self.repository.find_child(name)
                    if child is None:
                        child = self.repository.create_child(name)
                        association.children_created += 1
                    if all(existing is not child for existing in children):
                        children.append(child)

        if children:
            for child in children:
                target_project = project
                if target_project is None:
                    target_project, created = resolve_sponsorship_project(self.repository, child)
                    association.projects_created += int(created)
                association.targets.append(FundingTarget(project=target_project, child=child))
            return association

        if project is None and intent is not None and intent.project_type == ProjectType.CAMPAIGN:
            project = self._find_or_create_project(association, intent.title, ProjectType.CAMPAIGN)
        if project is None:
            project = self._find_or_create_project(
                association, self.default_project_title, ProjectType.GENERAL, system=True
            )
        association.targets.append(FundingTarget(project=project))
        return association

    def _find_or_create_project(
        self,
        association: Association,
        title: str,
        project_type: ProjectType,
        *,
        system: bool = False,
    ) -> Project:
        project = self.repository.find_project(title, project_type)
        if project is None:
            project = self.repository.create_project(title, project_type, system=system)
            association.projects_created += 1
        return project
