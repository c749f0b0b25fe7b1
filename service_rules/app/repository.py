"""
Rule repository: store, remove and look up rules across both stores.
"""

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from shared.config import BaseConfig
from shared.errors import PartialWriteError, StorageError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from .ids import make_id
from .models import Applicable, Effective, Provenance, PublishResult, RuleBranch, RuleMeta
from .persistence.documents import Documents
from .persistence.tables import Tables

IdMaker = Callable[[str, Mapping[str, Any]], str]

RULES = "rules"
TABLE_DATA = "table_data"


class RuleRepository:
    """
    Public lifecycle operations for rules and table data.

    Content goes to the document store; projections go to the column
    store only when the caller asks for them (``publish_rule`` or
    ``tables`` directly). The two stores are written independently and
    never rolled back.
    """

    def __init__(self, documents: Documents, tables: Optional[Tables] = None, id_maker: IdMaker = make_id):
        self.documents = documents
        self.tables = tables
        self.id_maker = id_maker
        self.logger = get_logger("rules.repository")

    @classmethod
    def from_config(cls, config: BaseConfig, metrics: Optional[MetricsCollector] = None) -> "RuleRepository":
        metrics = metrics or get_metrics_collector("rules")
        documents = Documents(
            config.documents_dsn,
            min_size=config.documents_pool_min,
            max_size=config.documents_pool_max,
            command_timeout=config.documents_command_timeout,
            metrics=metrics,
        )
        tables = Tables.from_url(
            config.projections_url,
            database=config.projections_database,
            timeout=config.projections_timeout,
            metrics=metrics,
        )
        return cls(documents, tables)

    async def close(self):
        await self.documents.close()
        if self.tables:
            await self.tables.close()

    async def store_rule(self, thing: str, provenance: Union[Provenance, Mapping[str, Any]], document: Mapping[str, Any]) -> str:
        """Store a rule document and return its public id."""
        src = _provenance(provenance)
        public_id = self._public_id(thing, src, document)

        await self.documents.insert_one(RULES, {**src, "content": document, "public_id": public_id, "thing": thing})
        self.logger.info("Rule stored", thing=thing, public_id=public_id)

        return public_id

    def _public_id(self, thing: str, src: Mapping[str, Any], document: Mapping[str, Any]) -> str:
        version = (document.get("meta") or {}).get("version")
        return self.id_maker(thing, {**src, "version": version})

    async def store_table_data(self, data: Mapping[str, Any]):
        await self.documents.insert_one(TABLE_DATA, data)

    async def remove_rules_by_origin_branch(self, origin: str, branch: str) -> int:
        return await self.documents.delete_many(RULES, {"origin": origin, "branch": branch})

    async def remove_table_data_by_origin_branch(self, origin: str, branch: str) -> int:
        return await self.documents.delete_many(TABLE_DATA, {"origin": origin, "branch": branch})

    async def remove_rule_by_id(self, public_id: str) -> int:
        """Remove every stored instance of a rule; removing nothing is fine."""
        return await self.documents.delete_many(RULES, {"public_id": public_id})

    async def remove_specific_table_data(self, origin: str, branch: str, ns: str, name: str) -> int:
        return await self.documents.delete_many(
            TABLE_DATA, {"origin": origin, "branch": branch, "ns": ns, "name": name}
        )

    async def lookup_rule_branches(self, rule_id: str) -> List[RuleBranch]:
        """Every stored instance of a rule, in store order, without dedup."""
        matches = await self.documents.find(RULES, {"public_id": rule_id})
        return [RuleBranch(id=m["public_id"], origin=m.get("origin"), branch=m.get("branch")) for m in matches]

    async def publish_rule(
        self,
        thing: str,
        provenance: Union[Provenance, Mapping[str, Any]],
        document: Mapping[str, Any],
        meta: Optional[Mapping[str, Any]] = None,
        applicables: Iterable[Mapping[str, Any]] = (),
        effectives: Iterable[Mapping[str, Any]] = (),
    ) -> PublishResult:
        """
        Store a rule's content and then its projections.

        Projection rows without a ``rule_id`` get the computed public id.
        On failure, ``PartialWriteError.result`` says which writes
        finished; nothing already written is undone.
        """
        if self.tables is None:
            raise ValueError("publish_rule needs a projection store")

        src = _provenance(provenance)
        public_id = self._public_id(thing, src, document)

        # Rows are validated before anything is written
        meta_row = RuleMeta.coerce(_stamp(meta, public_id)) if meta is not None else None
        app_rows = [Applicable.coerce(_stamp(a, public_id)) for a in applicables]
        eff_rows = [Effective.coerce(_stamp(e, public_id)) for e in effectives]

        result = PublishResult(public_id=public_id)
        try:
            await self.store_rule(thing, src, document)
            result.content_stored = True

            if meta_row is not None:
                await self.tables.store_meta(meta_row)
            await self.tables.store_applicables(app_rows)
            await self.tables.store_effectives(eff_rows)
            result.projections_stored = True
        except StorageError as e:
            self.logger.error(
                "Rule publish incomplete",
                public_id=result.public_id,
                content_stored=result.content_stored,
                error=str(e),
            )
            raise PartialWriteError(result, f"Publish incomplete: {e.message}", {"store": e.store}) from e

        return result

    async def unpublish_rule(self, public_id: str) -> int:
        return await self.remove_rule_by_id(public_id)

    async def health_check(self) -> Dict[str, bool]:
        status = {"documents": await self.documents.ping()}
        if self.tables:
            status["tables"] = await self.tables.ping()
        return status


def _provenance(value: Union[Provenance, Mapping[str, Any]]) -> Dict[str, Any]:
    # Plain mappings keep their extra keys
    if isinstance(value, Provenance):
        return value.as_row()
    missing = [k for k in Provenance.columns() if k not in value]
    if missing:
        raise ValidationError("Provenance is missing keys", {"missing": missing})
    return dict(value)


def _stamp(row: Mapping[str, Any], public_id: str) -> Dict[str, Any]:
    if isinstance(row, (RuleMeta, Applicable, Effective)):
        row = row.as_row()
    stamped = dict(row)
    if not stamped.get("rule_id"):
        stamped["rule_id"] = public_id
    return stamped
