"""
Remote case detail payloads and their normalization.

The detail endpoint answers in one of two shapes:

    v1 (older): {"success": true, "data": [{...flat case...}]}
    v2:         {"success": true, "data": {"case": {...nested case...}}}

Each shape is modelled by its own class with a ``normalize()`` method
returning the same CanonicalCase, so the transformer never inspects raw
field presence.
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Union, Literal
from core.exceptions import DecodeError
from schemas.catalog import is_valid_external_id


def _coerce_bool(v, default: bool = False) -> bool:
    if v is None or v == "":
        return default
    if isinstance(v, str):
        return v.strip().lower() in ("true", "1", "yes")
    return bool(v)


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _dig(node: Any, *path: str) -> Optional[str]:
    """Walk nested dicts; return a non-empty string leaf or None"""
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return _text(node)


def _clean_ids(v) -> List[int]:
    if v is None:
        return []
    if not isinstance(v, list):
        v = [v]
    return [int(i) for i in v if is_valid_external_id(i)]


# ============================================================================
# Canonical shape
# ============================================================================

class PatientInfo(BaseModel):
    age: Optional[str] = None
    gender: Optional[str] = None
    ethnicity: Optional[str] = None
    height: Optional[str] = None
    height_unit: Optional[str] = None
    weight: Optional[str] = None
    weight_unit: Optional[str] = None


class DoctorInfo(BaseModel):
    member_id: Optional[str] = None
    name: Optional[str] = None
    profile_url: Optional[str] = None
    suffix: Optional[str] = None


class SeoInfo(BaseModel):
    suffix_url: Optional[str] = None
    headline: Optional[str] = None
    page_title: Optional[str] = None
    page_description: Optional[str] = None
    alt_text: Optional[str] = None


class ImageSet(BaseModel):
    """URLs for one before/after photo set"""
    before_url: Optional[str] = None
    after_url: Optional[str] = None
    after_plus_url: Optional[str] = None
    side_by_side_url: Optional[str] = None
    side_by_side_hd_url: Optional[str] = None
    alt_text: Optional[str] = None
    is_nude: bool = False

    def has_images(self) -> bool:
        return any([
            self.before_url, self.after_url, self.after_plus_url,
            self.side_by_side_url, self.side_by_side_hd_url,
        ])


class CanonicalCase(BaseModel):
    """Version-independent view of one remote case"""
    case_id: str
    original_case_id: Optional[str] = None
    procedure_ids: List[int] = Field(default_factory=list)
    category_ids: List[int] = Field(default_factory=list)

    is_for_website: bool = True
    draft: bool = False

    patient: PatientInfo = Field(default_factory=PatientInfo)
    doctor: DoctorInfo = Field(default_factory=DoctorInfo)
    seo: SeoInfo = Field(default_factory=SeoInfo)
    image_sets: List[ImageSet] = Field(default_factory=list)

    notes: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    raw: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Shared remote pieces
# ============================================================================

class RemoteCreator(BaseModel):
    id: Optional[Any] = None
    profile_link: Optional[str] = Field(None, alias="profileLink")
    suffix: Optional[str] = None
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")

    def to_doctor(self) -> DoctorInfo:
        name = " ".join(part for part in [self.first_name, self.last_name] if part)
        if name and self.suffix:
            name = f"{name}, {self.suffix}"
        return DoctorInfo(
            member_id=str(self.id) if self.id not in (None, "") else None,
            name=name or None,
            profile_url=self.profile_link,
            suffix=self.suffix,
        )

    class Config:
        populate_by_name = True


def _image_set_from_dict(photo_set: Dict[str, Any], alt_fallback: Optional[str] = None) -> ImageSet:
    """Photo sets carry either a nested ``images`` object or flat location fields"""
    images = photo_set.get("images")
    if isinstance(images, dict):
        image_set = ImageSet(
            before_url=_dig(images, "before", "url"),
            after_url=_dig(images, "after", "url"),
            after_plus_url=_dig(images, "afterPlus", "url"),
            side_by_side_url=_dig(images, "sideBySide", "standard", "url"),
            side_by_side_hd_url=_dig(images, "sideBySide", "highDefinition", "url"),
        )
    else:
        image_set = ImageSet(
            before_url=_dig(photo_set, "beforeLocationUrl"),
            after_url=_dig(photo_set, "afterLocationUrl1"),
            side_by_side_url=_dig(photo_set, "postProcessedImageLocation"),
            side_by_side_hd_url=_dig(photo_set, "highResPostProcessedImageLocation"),
        )
    image_set.alt_text = _dig(photo_set, "seoAltText") or alt_fallback
    image_set.is_nude = _coerce_bool(photo_set.get("isNude"))
    return image_set


# ============================================================================
# v1: flat case object
# ============================================================================

class RemoteCaseV1(BaseModel):
    """Older flat detail record (``data`` is a list, first element used)"""

    version: Literal["v1"] = "v1"

    id: Any
    case_id: Optional[Any] = Field(None, alias="caseId")
    patient_id: Optional[Any] = Field(None, alias="patientId")

    age: Optional[Any] = None
    gender: Optional[str] = None
    ethnicity: Optional[str] = None
    height: Optional[Any] = None
    height_unit: Optional[str] = Field(None, alias="heightUnit")
    weight: Optional[Any] = None
    weight_unit: Optional[str] = Field(None, alias="weightUnit")

    quality_score: Optional[Any] = Field(None, alias="qualityScore")
    approved_for_social: Optional[Any] = Field(None, alias="approvedForSocial")
    is_for_tablet: Optional[Any] = Field(None, alias="isForTablet")
    is_for_website: Optional[Any] = Field(None, alias="isForWebsite")
    draft: Optional[Any] = None
    no_watermark: Optional[Any] = Field(None, alias="noWatermark")

    details: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[str] = Field(None, alias="createdAt")
    updated_at: Optional[str] = Field(None, alias="updatedAt")

    procedure_ids: List[int] = Field(default_factory=list, alias="procedureIds")
    category_ids: List[int] = Field(default_factory=list, alias="categoryIds")

    creator: Optional[RemoteCreator] = None
    post_op: Optional[Dict[str, Any]] = Field(None, alias="postOp")
    case_details: List[Dict[str, Any]] = Field(default_factory=list, alias="caseDetails")
    photo_sets: List[Dict[str, Any]] = Field(default_factory=list, alias="photoSets")

    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @validator("procedure_ids", "category_ids", pre=True)
    def clean_ids(cls, v):
        return _clean_ids(v)

    @validator("case_details", "photo_sets", pre=True)
    def clean_lists(cls, v):
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict)]

    def _seo(self) -> SeoInfo:
        # First detail entry with a suffix URL wins; headline fields come from the same entry
        for detail in self.case_details:
            if _dig(detail, "seoSuffixUrl"):
                return SeoInfo(
                    suffix_url=_dig(detail, "seoSuffixUrl"),
                    headline=_dig(detail, "seoHeadline"),
                    page_title=_dig(detail, "seoPageTitle"),
                    page_description=_dig(detail, "seoPageDescription"),
                )
        if self.case_details:
            first = self.case_details[0]
            return SeoInfo(
                headline=_dig(first, "seoHeadline"),
                page_title=_dig(first, "seoPageTitle"),
                page_description=_dig(first, "seoPageDescription"),
            )
        return SeoInfo()

    def normalize(self) -> CanonicalCase:
        seo = self._seo()
        post_op = self.post_op or {}
        return CanonicalCase(
            case_id=str(self.id),
            original_case_id=str(self.case_id) if self.case_id not in (None, "") else None,
            procedure_ids=self.procedure_ids,
            category_ids=self.category_ids,
            is_for_website=_coerce_bool(self.is_for_website, default=True),
            draft=_coerce_bool(self.draft),
            patient=PatientInfo(
                age=_text(self.age),
                gender=self.gender,
                ethnicity=self.ethnicity,
                height=_text(self.height),
                height_unit=self.height_unit,
                weight=_text(self.weight),
                weight_unit=self.weight_unit,
            ),
            doctor=self.creator.to_doctor() if self.creator else DoctorInfo(),
            seo=seo,
            image_sets=[
                image_set for image_set in (
                    _image_set_from_dict(photo_set, seo.headline) for photo_set in self.photo_sets
                ) if image_set.has_images()
            ],
            notes=self.details or self.description,
            attributes={
                "patient_id": self.patient_id,
                "quality_score": self.quality_score,
                "approved_for_social": _coerce_bool(self.approved_for_social),
                "is_for_tablet": _coerce_bool(self.is_for_tablet),
                "no_watermark": _coerce_bool(self.no_watermark),
                "technique": post_op.get("technique"),
                "revision_surgery": _coerce_bool(post_op.get("revisionSurgery")),
                "after_timeframe": post_op.get("after1Timeframe"),
                "after_unit": post_op.get("after1Unit"),
                "remote_created_at": self.created_at,
                "remote_updated_at": self.updated_at,
            },
            raw=self.raw,
        )

    class Config:
        populate_by_name = True


# ============================================================================
# v2: nested case object
# ============================================================================

class RemotePatientInfo(BaseModel):
    age: Optional[Any] = None
    gender: Optional[str] = None
    ethnicity: Optional[str] = None
    height: Optional[Any] = None
    height_unit: Optional[str] = Field(None, alias="heightUnit")
    weight: Optional[Any] = None
    weight_unit: Optional[str] = Field(None, alias="weightUnit")

    class Config:
        populate_by_name = True


class RemoteSeoInfo(BaseModel):
    suffix_url: Optional[str] = Field(None, alias="suffixUrl")
    headline: Optional[str] = None
    page_title: Optional[str] = Field(None, alias="pageTitle")
    page_description: Optional[str] = Field(None, alias="pageDescription")
    alt_text: Optional[str] = Field(None, alias="altText")

    class Config:
        populate_by_name = True


class RemoteCaseV2(BaseModel):
    """Nested detail record (``data.case``)"""

    version: Literal["v2"] = "v2"

    id: Any
    case_id: Optional[Any] = Field(None, alias="caseId")
    patient_info: RemotePatientInfo = Field(default_factory=RemotePatientInfo, alias="patientInfo")
    seo_info: RemoteSeoInfo = Field(default_factory=RemoteSeoInfo, alias="seoInfo")
    photo_sets: List[Dict[str, Any]] = Field(default_factory=list, alias="photoSets")
    procedure_ids: List[int] = Field(default_factory=list, alias="procedureIds")
    category_ids: List[int] = Field(default_factory=list, alias="categoryIds")
    creator: Optional[RemoteCreator] = None

    is_for_website: Optional[Any] = Field(None, alias="isForWebsite")
    draft: Optional[Any] = None
    details: Optional[str] = None
    quality_score: Optional[Any] = Field(None, alias="qualityScore")
    created_at: Optional[str] = Field(None, alias="createdAt")
    updated_at: Optional[str] = Field(None, alias="updatedAt")

    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @validator("procedure_ids", "category_ids", pre=True)
    def clean_ids(cls, v):
        return _clean_ids(v)

    @validator("photo_sets", pre=True)
    def clean_photo_sets(cls, v):
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict)]

    @validator("patient_info", "seo_info", pre=True)
    def empty_to_default(cls, v):
        return v or {}

    def normalize(self) -> CanonicalCase:
        info = self.patient_info
        seo = SeoInfo(
            suffix_url=self.seo_info.suffix_url,
            headline=self.seo_info.headline,
            page_title=self.seo_info.page_title,
            page_description=self.seo_info.page_description,
            alt_text=self.seo_info.alt_text,
        )
        return CanonicalCase(
            case_id=str(self.id),
            original_case_id=str(self.case_id) if self.case_id not in (None, "") else None,
            procedure_ids=self.procedure_ids,
            category_ids=self.category_ids,
            is_for_website=_coerce_bool(self.is_for_website, default=True),
            draft=_coerce_bool(self.draft),
            patient=PatientInfo(
                age=_text(info.age),
                gender=info.gender,
                ethnicity=info.ethnicity,
                height=_text(info.height),
                height_unit=info.height_unit,
                weight=_text(info.weight),
                weight_unit=info.weight_unit,
            ),
            doctor=self.creator.to_doctor() if self.creator else DoctorInfo(),
            seo=seo,
            image_sets=[
                image_set for image_set in (
                    _image_set_from_dict(photo_set, seo.alt_text or seo.headline)
                    for photo_set in self.photo_sets
                ) if image_set.has_images()
            ],
            notes=self.details,
            attributes={
                "quality_score": self.quality_score,
                "remote_created_at": self.created_at,
                "remote_updated_at": self.updated_at,
            },
            raw=self.raw,
        )

    class Config:
        populate_by_name = True


RemoteCase = Union[RemoteCaseV1, RemoteCaseV2]


def parse_case_payload(payload: Any, case_id: Any = None) -> RemoteCase:
    """
    Pick the variant for a decoded detail response.

    Raises:
        DecodeError: If the payload matches neither shape
    """
    if not isinstance(payload, dict):
        raise DecodeError(
            "Case detail response is not a JSON object",
            context={"case_id": case_id, "payload_type": type(payload).__name__}
        )

    data = payload.get("data")

    try:
        if isinstance(data, dict) and isinstance(data.get("case"), dict):
            record = data["case"]
            return RemoteCaseV2.model_validate({**record, "version": "v2", "raw": record})
        if isinstance(data, list) and data and isinstance(data[0], dict):
            record = data[0]
            return RemoteCaseV1.model_validate({**record, "version": "v1", "raw": record})
        if isinstance(data, dict) and "id" in data:
            return RemoteCaseV1.model_validate({**data, "version": "v1", "raw": data})
    except (TypeError, ValueError) as e:
        raise DecodeError(
            "Case detail record failed validation",
            context={"case_id": case_id},
            original_exception=e
        )

    raise DecodeError(
        "Case detail response has no case record",
        context={"case_id": case_id, "data_type": type(data).__name__}
    )
