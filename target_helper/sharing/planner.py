"""
Share fan-out.

For each processed document, resolve the master-data entity recorded in its
``_meta/lookups`` and derive the trading partners that should receive a
copy, then post one ``share-user-link`` job per (partner, document) to the
trellis-shares service.

    fsqa-audits / fsqa-certificates   lookups[<singular>].organization -> facility
                                      partners = expand-index entries whose
                                      facilities include that facility
    cois                              lookups.coi.holder -> holder resource
                                      partners = holder['trading-partners']
    letters-of-guarantee              lookups['letter-of-guarantee'].buyer -> buyer
                                      partners = buyer['trading-partners']
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from target_helper.jobs.errors import (
    DocumentFetchFailure,
    LinkWriteFailure,
    LookupResolutionFailure,
    MalformedLookupMetadata,
    UnknownDocumentType,
)
from target_helper.shared.config import MaskRule
from target_helper.shared.observability import get_logger
from target_helper.shared.observability.metrics import share_jobs_posted_total
from target_helper.store.base import ResourceStore, StoreError
from target_helper.store.tree import (
    JOB_CONTENT_TYPE,
    SHARES_PENDING_JOBS,
    TREE,
    tree_for_document_type,
)

from .expand_index import ExpandIndexCache

logger = get_logger(__name__)

FACILITY = "facility"
ENTITY = "entity"

# doctype -> (lookup key, lookup field, how partners are found)
LOOKUP_RULES: Dict[str, Tuple[str, str, str]] = {
    "fsqa-audits": ("fsqa-audit", "organization", FACILITY),
    "fsqa-certificates": ("fsqa-certificate", "organization", FACILITY),
    "cois": ("coi", "holder", ENTITY),
    "letters-of-guarantee": ("letter-of-guarantee", "buyer", ENTITY),
}


@dataclass(frozen=True)
class Share:
    partner_id: str
    doc_id: str
    doc_key: str
    doctype: str

    @property
    def partner_key(self) -> str:
        return self.partner_id.replace("resources/", "", 1)


class ShareFanoutPlanner:
    def __init__(
        self,
        store: ResourceStore,
        expand_index: ExpandIndexCache,
        mask_rules: Optional[List[MaskRule]] = None,
    ):
        self.store = store
        self.expand_index = expand_index
        self.mask_rules = list(mask_rules or [])

    async def _get(self, path: str, job_id: Optional[str]) -> Any:
        try:
            return await self.store.get(path)
        except StoreError as e:
            raise DocumentFetchFailure(
                f"Could not fetch {path}: {e}", job_id=job_id, step="shares"
            ) from e

    async def _lookup_ref(
        self, doctype: str, doc_id: str, job_id: Optional[str]
    ) -> Tuple[str, str]:
        rule = LOOKUP_RULES.get(doctype)
        if rule is None:
            raise UnknownDocumentType(
                f"Unknown document type ({doctype}) when attempting to do lookups",
                job_id=job_id,
            )
        lookup_key, field, mode = rule
        lookups = await self._get(f"/{doc_id}/_meta/lookups", job_id)
        try:
            ref = lookups[lookup_key][field]["_ref"]
        except (KeyError, TypeError) as e:
            raise MalformedLookupMetadata(
                f"/{doc_id}/_meta/lookups has no {lookup_key}.{field}._ref",
                job_id=job_id,
                context={"lookups": lookups},
            ) from e
        if not isinstance(ref, str) or not ref:
            raise MalformedLookupMetadata(
                f"/{doc_id}/_meta/lookups {lookup_key}.{field}._ref is not a resource id",
                job_id=job_id,
            )
        return ref, mode

    async def _partners_for_facility(self, facility_id: str) -> List[str]:
        index = await self.expand_index.get()
        partners: List[str] = []
        for key, entry in index["trading-partners"].items():
            facilities = entry.get("facilities") if isinstance(entry, Mapping) else None
            if not facilities:
                continue  # partner has no facilities
            if not any(
                isinstance(link, Mapping) and link.get("_id") == facility_id
                for link in facilities.values()
            ):
                continue
            partner_id = entry.get("id") or entry.get("_id")
            if not partner_id:
                raise LookupResolutionFailure(
                    f"Expand-index entry {key} for facility {facility_id} has no id"
                )
            partners.append(partner_id)
        logger.debug(
            "facility_partners_resolved", facility=facility_id, partners=partners
        )
        return partners

    async def _partners_for_entity(
        self, entity_id: str, job_id: Optional[str]
    ) -> List[str]:
        entity = await self._get(f"/{entity_id}", job_id)
        links = entity.get("trading-partners") if isinstance(entity, dict) else None
        if links is None:
            logger.info("entity_has_no_trading_partners", entity=entity_id)
            return []
        if not isinstance(links, dict):
            raise MalformedLookupMetadata(
                f"trading-partners on /{entity_id} is not a list of links",
                job_id=job_id,
            )
        partners: List[str] = []
        for key, link in links.items():
            if key.startswith("_"):
                continue
            if not isinstance(link, dict) or not link.get("_id"):
                raise LookupResolutionFailure(
                    f"Trading partner link {key} on /{entity_id} has no _id",
                    job_id=job_id,
                )
            partner = await self._get(f"/{link['_id']}", job_id)
            if not isinstance(partner, dict) or not partner.get("_id"):
                raise LookupResolutionFailure(
                    f"Expected _id on trading partner {link['_id']}", job_id=job_id
                )
            partners.append(partner["_id"])
        return partners

    async def partners_for(
        self, doctype: str, doc_id: str, job_id: Optional[str] = None
    ) -> List[str]:
        ref, mode = await self._lookup_ref(doctype, doc_id, job_id)
        if mode == FACILITY:
            return await self._partners_for_facility(ref)
        return await self._partners_for_entity(ref, job_id)

    async def plan(
        self, result: Dict[str, Dict[str, Any]], job_id: Optional[str] = None
    ) -> List[Share]:
        """Every (partner, document) pair for result, without duplicates."""
        shares: List[Share] = []
        seen: Set[Tuple[str, str]] = set()
        for doctype, documents in result.items():
            for doc_key, link in documents.items():
                if not isinstance(link, dict) or not link.get("_id"):
                    continue
                doc_id = link["_id"]
                for partner_id in await self.partners_for(doctype, doc_id, job_id):
                    if (partner_id, doc_id) in seen:
                        continue
                    seen.add((partner_id, doc_id))
                    shares.append(Share(partner_id, doc_id, doc_key, doctype))
        return shares

    def mask_for(self, partner_key: str, doctype: str) -> Union[Dict[str, Any], bool]:
        for rule in self.mask_rules:
            if rule.partner_pattern and rule.partner_pattern in partner_key:
                logger.info(
                    "share_will_mask",
                    partner=partner_key,
                    keys=rule.keys_to_mask,
                )
                return {
                    "keys_to_mask": list(rule.keys_to_mask),
                    "generate_pdf": doctype in rule.generate_pdf_for,
                }
        return False

    def build_share_job(self, share: Share, user: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": "share-user-link",
            "service": "trellis-shares",
            "config": {
                "src": f"/{share.doc_id}",
                "copy": {
                    # copy the full original; only the vdoc part of _meta
                    "original": True,
                    "meta": {"vdoc": True},
                    "mask": self.mask_for(share.partner_key, share.doctype),
                },
                "doctype": share.doctype,
                "dest": f"/bookmarks/trellisfw/{share.doctype}/{share.doc_key}",
                "user": user,
                "chroot": (
                    f"/bookmarks/trellisfw/trading-partners/{share.partner_key}"
                    "/user/bookmarks"
                ),
                "tree": tree_for_document_type(share.doctype),
            },
        }

    async def post_share(self, share: Share, job_id: Optional[str] = None) -> str:
        user = await self._get(f"/{share.partner_id}/user", job_id)
        if not isinstance(user, dict):
            raise LookupResolutionFailure(
                f"/{share.partner_id}/user is not a JSON link", job_id=job_id
            )
        try:
            location = await self.store.post(
                "/resources",
                self.build_share_job(share, user),
                content_type=JOB_CONTENT_TYPE,
            )
            resource_id = location.strip("/")
            key = resource_id.replace("resources/", "", 1)
            await self.store.put(
                SHARES_PENDING_JOBS,
                {key: {"_id": resource_id, "_rev": 0}},
                tree=TREE,
            )
        except StoreError as e:
            raise LinkWriteFailure(
                f"Failed to post share job for {share.doc_id} to {share.partner_id}: {e}",
                job_id=job_id,
                step="shares",
            ) from e
        share_jobs_posted_total.labels(doctype=share.doctype).inc()
        logger.info(
            "share_job_posted",
            share_job=resource_id,
            partner=share.partner_key,
            doc=share.doc_id,
            doctype=share.doctype,
        )
        return resource_id

    async def fan_out(
        self, result: Dict[str, Dict[str, Any]], job_id: Optional[str] = None
    ) -> List[Share]:
        shares = await self.plan(result, job_id)
        logger.info("sharing", share_jobs=len(shares), doctypes=list(result))
        for share in shares:
            await self.post_share(share, job_id)
        return shares
