# Tree shapes used for tree-driven PUTs, and the well known paths

import copy
from typing import Any, Dict, Optional

TRELLIS_ROOT = "/bookmarks/trellisfw"
TARGET_JOBS = "/bookmarks/services/target/jobs"
PENDING_JOBS = f"{TARGET_JOBS}/pending"
SHARES_PENDING_JOBS = "/bookmarks/services/trellis-shares/jobs/pending"
DOCUMENTS = f"{TRELLIS_ROOT}/documents"
ASNS = f"{TRELLIS_ROOT}/asns"
TRADING_PARTNERS = f"{TRELLIS_ROOT}/trading-partners"
TRADING_PARTNERS_EXPAND_INDEX = f"{TRADING_PARTNERS}/expand-index"
COI_HOLDERS_EXPAND_INDEX = f"{TRELLIS_ROOT}/coi-holders/expand-index"

JOB_CONTENT_TYPE = "application/vnd.oada.service.job.1+json"

_DOCUMENTS: Dict[str, Any] = {
    "_type": "application/vnd.trellisfw.documents.1+json",
    "*": {
        "_type": "application/vnd.trellisfw.documents.1+json",
        "_rev": 0,
        "*": {"_type": "application/vnd.trellisfw.document.1+json", "_rev": 0},
    },
}

_PARTNER_SPACE: Dict[str, Any] = {
    "_type": "application/vnd.oada.bookmarks.1+json",
    "trellisfw": {
        "_type": "application/vnd.trellisfw.1+json",
        "documents": _DOCUMENTS,
        "fsqa-audits": {"_type": "application/vnd.trellisfw.fsqa-audits.1+json"},
        "cois": {"_type": "application/vnd.trellisfw.cois.1+json"},
    },
}

_JOB_DAY_INDEX: Dict[str, Any] = {
    "_type": "application/vnd.oada.service.jobs.1+json",
    "day-index": {
        "*": {
            "_type": "application/vnd.oada.service.jobs.1+json",
            "_rev": 0,
            "*": {"_type": JOB_CONTENT_TYPE, "_rev": 0},
        }
    },
}

TREE: Dict[str, Any] = {
    "bookmarks": {
        "_type": "application/vnd.oada.bookmarks.1+json",
        "trellisfw": {
            "_type": "application/vnd.trellisfw.1+json",
            "coi-holders": {
                "_type": "application/vnd.trellisfw.trading-partners.1+json",
                "expand-index": {
                    "_type": "application/vnd.trellisfw.trading-partners.1+json"
                },
            },
            "trading-partners": {
                "_type": "application/vnd.trellisfw.trading-partners.1+json",
                "*": {
                    "_type": "application/vnd.trellisfw.trading-partner.1+json",
                    "bookmarks": _PARTNER_SPACE,
                    "shared": _PARTNER_SPACE,
                },
            },
            "documents": _DOCUMENTS,
            "asns": {
                "_type": "application/vnd.trellisfw.asns.1+json",
                "day-index": {
                    "*": {
                        "_type": "application/vnd.trellisfw.asns.1+json",
                        "_rev": 0,
                        "*": {
                            "_type": "application/vnd.trellisfw.asn.sf.1+json",
                            "_rev": 0,
                        },
                    }
                },
            },
        },
        "services": {
            "_type": "application/vnd.oada.services.1+json",
            "*": {
                "_type": "application/vnd.oada.service.1+json",
                "jobs": {
                    "_type": "application/vnd.oada.service.jobs.1+json",
                    "pending": {
                        "_type": "application/vnd.oada.service.jobs.1+json",
                        "*": {"_type": JOB_CONTENT_TYPE, "_rev": 0},
                    },
                    "success": _JOB_DAY_INDEX,
                    "failure": _JOB_DAY_INDEX,
                },
            },
        },
    },
}


def singular_document_type(doctype: str) -> str:
    """
    cois -> coi, letters-of-guarantee -> letter-of-guarantee.

    Raises:
        ValueError: if no singular form can be derived
    """
    if doctype.endswith("s"):
        return doctype[:-1]
    if "-" in doctype:
        first, rest = doctype.split("-", 1)
        if first.endswith("s"):
            return f"{first[:-1]}-{rest}"
        raise ValueError(
            f"doctype {doctype} has dashes, but is not easily convertible "
            "to singular word for _type"
        )
    raise ValueError(
        f"doctype {doctype} is not easily convertible to singular word for _type"
    )


def tree_for_document_type(doctype: str) -> Dict[str, Any]:
    """Tree for publishing versioned document links under /bookmarks/trellisfw/<doctype>"""
    singular = singular_document_type(doctype)
    return {
        "bookmarks": {
            "_type": "application/vnd.oada.bookmarks.1+json",
            "trellisfw": {
                "_type": "application/vnd.trellis.1+json",
                doctype: {
                    "_type": f"application/vnd.trellis.{doctype}.1+json",
                    "*": {
                        "_type": f"application/vnd.trellis.{singular}.1+json",
                        "_rev": 1,
                    },
                },
            },
        }
    }


def partner_tree(doctype: str) -> Dict[str, Any]:
    """
    Tree for writes under a trading partner's shared space; the per-doctype
    bucket is grafted next to documents.
    """
    tree = copy.deepcopy(TREE)
    shared = tree["bookmarks"]["trellisfw"]["trading-partners"]["*"]["shared"]
    published = tree_for_document_type(doctype)["bookmarks"]["trellisfw"][doctype]
    shared["trellisfw"].setdefault(doctype, published)
    return tree


def trellis_root(trading_partner: Optional[str] = None) -> str:
    if trading_partner:
        return f"{TRADING_PARTNERS}/{trading_partner}/shared/trellisfw"
    return TRELLIS_ROOT
