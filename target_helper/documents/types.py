"""
Document type registry.

Maps between the human readable document type names used by target, the
trellis content types used for storage typing, and the URL-safe plural keys
used for bucket paths (``/bookmarks/trellisfw/documents/<key>``).
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class DocumentType:
    name: str
    url_name: str
    content_type: str
    alternative_names: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def names(self) -> Tuple[str, ...]:
        return (self.name,) + self.alternative_names


def _t(name: str, url_name: str, content_type: str, *aliases: str) -> DocumentType:
    return DocumentType(name, url_name, content_type, tuple(aliases))


DOCUMENT_TYPES: List[DocumentType] = [
    _t("Unidentified", "unidentified", "application/vnd.trellisfw.unidentified"),
    _t("ACH Form", "ach-forms", "application/vnd.trellisfw.ach-form.1+json"),
    _t("Certificate of Insurance", "cois", "application/vnd.trellisfw.coi.accord.1+json"),
    _t(
        "Pure Food Guaranty and Indemnification Agreement (LOG)",
        "pfgias",
        "application/vnd.trellisfw.pfgia.1+json",
    ),
    _t(
        "Letter of Guarantee",
        "letters-of-guarantee",
        "application/vnd.trellisfw.letter-of-guarantee.1+json",
        "Pure Food Guaranty and Indemnification Agreement (LOG)",
    ),
    _t(
        "Emergency Contact Information",
        "emergency-contact-information",
        "application/vnd.trellisfw.emergency-contact-information.1+json",
    ),
    _t(
        "Specifications that indicate acceptable requirements",
        "sars",
        "application.vnd.trellisfw.sars.1+json",
    ),
    _t("W-9", "w-9s", "application/vnd.trellisfw.w-9.1+json"),
    _t(
        "100g Nutritional Information",
        "100g-nutritional-information",
        "application/vnd.trellisfw.nutritional-information.1+json",
        "Nutrition Information",
    ),
    _t(
        "Allergen Statement",
        "allergen-statements",
        "application/vnd.trellisfw.allergen-statement.1+json",
        "Ingredient Allergen Statement",
    ),
    _t(
        "Bioengineered (BE) Ingredient Statement",
        "be-ingredient-statements",
        "application/vnd.trellisfw.be-ingredient-statement.1+json",
    ),
    _t(
        "California Prop 65 Statement",
        "ca-prop-65-statements",
        "application/vnd.trellisfw.ca-prop-65-statement.1+json",
    ),
    _t(
        "Country of Origin Statement",
        "coo-statements",
        "application/vnd.trellisfw.coo-statement.1+json",
    ),
    _t(
        "Gluten Statement",
        "gluten-statements",
        "application/vnd.trellisfw.gluten-statement.1+json",
        "Gluten Claim",
    ),
    _t(
        "Ingredient Breakdown Range %",
        "ingredient-breakdowns",
        "application/vnd.trellisfw.ingredient-breakdown.1+json",
        "% Product Composition",
    ),
    _t("Product Label", "product-labels", "application/vnd.trellisfw.product-label.1+json"),
    _t(
        "Product Specification",
        "product-specs",
        "application/vnd.trellisfw.product-spec.1+json",
        "Specification",
    ),
    _t("Safety Data Sheet (SDS)", "sds", "application/vnd.trellisfw.sds.1+json"),
    _t("GMO Statement", "gmo-statements", "application/vnd.trellisfw.gmo-statement.1+json"),
    _t(
        "Natural Statement",
        "natural-statements",
        "application/vnd.trellisfw.natural-statement.1+json",
    ),
    _t(
        "GFSI Certificate",
        "fsqa-certificates",
        "application/vnd.trellisfw.fsqa-certificates.1+json",
    ),
    _t(
        "Non-Ambulatory (3D/4D) Animal Statement",
        "animal-statements",
        "application/vnd.trellisfw.animal-statement.1+json",
    ),
    _t(
        "Specified Risk Materials (SRM) Audit",
        "srm-audits",
        "application/vnd.trellisfw.srm-audit.1+json",
    ),
    _t(
        "Specified Risk Materials (SRM) Statement",
        "srm-statements",
        "application/vnd.trellisfw.srm-statement.1+json",
    ),
    _t(
        "Specified Risk Materials (SRM) Corrective Actions",
        "srm-corrective-actions",
        "application/vnd.trellisfw.srm-corrective-actions.1+json",
    ),
    _t(
        "E.Coli 0157:H7 Intervention Audit",
        "ecoli-audits",
        "application/vnd.trellisfw.ecoli-audit.1+json",
    ),
    _t(
        "Foreign Material Control Plan",
        "foreign-material-control-plans",
        "application/vnd.trellisfw.foreign-material-control-plans.1+json",
    ),
    _t(
        "Animal Welfare Audit",
        "animal-welfare-audits",
        "application/vnd.trellisfw.animal-welfare-audit.1+json",
    ),
    _t(
        "Humane Harvest Statement",
        "humane-harvest-statements",
        "application/vnd.trellisfw.humane-harvest-statement.1+json",
        "Humane Slaughter Statement",
    ),
    _t(
        "National Residue Program (NRP) Statement",
        "nrp-statements",
        "application/vnd.trellisfw.nrp-statement.1+json",
    ),
    _t(
        "Lot Code Explanation",
        "lot-code-explanations",
        "application/vnd.trellisfw.lot-code-explanation.1+json",
    ),
    _t("APHIS Statement", "aphis-statements", "application/vnd.trellisfw.aphis-statement.1+json"),
    _t(
        "Bisphenol A (BPA) Statement",
        "bpa-statements",
        "application/vnd.trellisfw.bpa-statement.1+json",
    ),
    _t("GFSI Audit", "fsqa-audits", "application/vnd.trellisfw.fsqa-audit.1+json"),
    _t("HACCP Plan / Flow Chart", "haccp-plans", "application/vnd.trellisfw.haccp-plan.1+json"),
    _t(
        "Co-Packer FSQA Questionnaire (GFSI Certified)",
        "copacker-fsqa-questionnaires",
        "application/vnd.trellisfw.copacker-fsqa-questionnaire.1+json",
    ),
    _t(
        "Co-Pack Confidentiality Agreement Form",
        "copack-confidentiality-agreement-forms",
        "application/vnd.trellisfw.copack-confidentiality-agreement-form.1+json",
    ),
    _t(
        "Third Party Food Safety GMP Audit Corrective Actions",
        "tpa-corrective-actions",
        "application/vnd.trellisfw.tpa-corrective-actions.1+json",
    ),
    _t("W-8", "w-8s", "application/vnd.trellisfw.w-8.1+json"),
    _t(
        "Third Party Food Safety GMP Audit",
        "fsqa-audits",
        "application/vnd.trellisfw.fsqa-audit.1+json",
    ),
    _t(
        "Animal Welfare Corrective Actions",
        "animal-welfare-corrective-actions",
        "application/vnd.trellisfw.animal-welfare-corrective-actions.1+json",
    ),
    _t(
        "Third Party Food Safety GMP Certificate",
        "fsqa-certificates",
        "application/vnd.trellisfw.fsqa-certificate.1+json",
    ),
    _t(
        "Small Business Administration (SBA) Form",
        "sba-forms",
        "application/vnd.trellisfw.sba-form.1+json",
    ),
    _t("WIRE Form", "wire-forms", "application/vnd.trellisfw.wire-form.1+json"),
    _t(
        "E.Coli 0157:H7 Intervention Statement",
        "ecoli-statements",
        "application/vnd.trellisfw.ecoli-statement.1+json",
    ),
    _t(
        "Business License",
        "business-licenses",
        "application/vnd.trellisfw.business-license.1+json",
    ),
    _t("Rate Sheet", "rate-sheets", "application/vnd.trellisfw.rate-sheet.1+json"),
    _t("Master Service Agreement (MSA)", "msas", "application/vnd.trellisfw.msa.1+json"),
]


class DocumentTypeRegistry:
    """
    Bidirectional lookup over a table of DocumentType entries.

    Several names may share a URL key (e.g. "GFSI Audit" and "Third Party
    Food Safety GMP Audit" are both fsqa-audits); the first entry for a key
    is its canonical entry.
    """

    def __init__(self, types: Iterable[DocumentType] = DOCUMENT_TYPES):
        self._types = list(types)
        self._by_name: Dict[str, DocumentType] = {}
        self._by_url_name: Dict[str, DocumentType] = {}
        self._by_content_type: Dict[str, DocumentType] = {}
        for doc_type in self._types:
            self._by_name.setdefault(doc_type.name, doc_type)
            self._by_url_name.setdefault(doc_type.url_name, doc_type)
            self._by_content_type.setdefault(doc_type.content_type, doc_type)
        # aliases never shadow a primary name
        for doc_type in self._types:
            for alias in doc_type.alternative_names:
                self._by_name.setdefault(alias, doc_type)

    def __iter__(self):
        return iter(self._types)

    def __len__(self) -> int:
        return len(self._types)

    def from_name(self, name: str) -> Optional[DocumentType]:
        return self._by_name.get(name)

    def from_url_name(self, url_name: str) -> Optional[DocumentType]:
        return self._by_url_name.get(url_name)

    def from_content_type(self, content_type: str) -> Optional[DocumentType]:
        return self._by_content_type.get(content_type)

    def resolve(self, value: str) -> Optional[DocumentType]:
        """Look a value up as URL key, then content type, then name."""
        return (
            self.from_url_name(value)
            or self.from_content_type(value)
            or self.from_name(value)
        )

    def content_type_for(self, url_name: str) -> Optional[str]:
        doc_type = self.from_url_name(url_name)
        return doc_type.content_type if doc_type else None

    def is_alias(self, first: str, second: str) -> bool:
        """
        True when both values name the same document type: same URL key, or
        one is listed among the other's alternative names.
        """
        if first == second:
            return True
        a, b = self.resolve(first), self.resolve(second)
        if a is None or b is None:
            return False
        if a.url_name == b.url_name:
            return True
        a_names = {n for t in self._types if t.url_name == a.url_name for n in t.names}
        b_names = {n for t in self._types if t.url_name == b.url_name for n in t.names}
        return bool(a_names & b_names)


_registry: Optional[DocumentTypeRegistry] = None


def get_registry() -> DocumentTypeRegistry:
    global _registry
    if _registry is None:
        _registry = DocumentTypeRegistry()
    return _registry
