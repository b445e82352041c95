"""
License-annotated archive of a fleet history, and its JSON wire format.
"""

import json
from typing import Dict, Iterator, List, Optional, TextIO

from models import (
    ImageLocator,
    InstanceHistory,
    InstanceLocator,
    InstanceSetHistory,
    LicenseAnnotation,
    LicenseType,
    OperatingSystemType,
    SoleTenantPlacement,
    Tenancy,
    format_timestamp,
    parse_timestamp,
)

TYPE_ANNOTATION = (
    "type.googleapis.com/google.solutions.loganalysis.AnnotatedInstanceSetHistory"
)


class ArchiveFormatError(ValueError):
    """The document is not a valid annotated instance set history."""


def _encode_instance(instance: InstanceHistory) -> Dict:
    doc: Dict = {"id": instance.instance_id}
    if instance.reference is not None:
        doc["vm"] = {
            "projectId": instance.reference.project_id,
            "zone": instance.reference.zone,
            "name": instance.reference.name,
        }
    if instance.image is not None:
        doc["image"] = str(instance.image)
    doc["tenancy"] = int(instance.tenancy)
    doc["placements"] = [
        {
            "server": p.server_id,
            "from": format_timestamp(p.start),
            "to": format_timestamp(p.end),
        }
        for p in instance.placements
    ]
    if instance.last_stopped_on is not None:
        doc["lastStoppedOn"] = format_timestamp(instance.last_stopped_on)
    doc["defunct"] = instance.is_defunct
    return doc


def _decode_instance(doc: Dict) -> InstanceHistory:
    vm = doc.get("vm")
    reference = (
        InstanceLocator(
            project_id=vm["projectId"], zone=vm["zone"], name=vm["name"]
        )
        if vm
        else None
    )
    image = ImageLocator.from_string(doc["image"]) if doc.get("image") else None
    last_stopped_on = (
        parse_timestamp(doc["lastStoppedOn"]) if doc.get("lastStoppedOn") else None
    )

    return InstanceHistory(
        instance_id=int(doc["id"]),
        reference=reference,
        image=image,
        tenancy=Tenancy(doc.get("tenancy", Tenancy.UNKNOWN)),
        placements=tuple(
            SoleTenantPlacement(
                server_id=p["server"],
                start=parse_timestamp(p["from"]),
                end=parse_timestamp(p["to"]),
            )
            for p in doc.get("placements", [])
        ),
        last_stopped_on=last_stopped_on,
        is_defunct=bool(doc.get("defunct", False)),
    )


class AnnotatedInstanceSetHistory:
    """A fleet history together with license annotations for its images."""

    def __init__(
        self,
        history: InstanceSetHistory,
        license_annotations: Optional[Dict[str, LicenseAnnotation]] = None,
    ):
        self.history = history
        self.license_annotations: Dict[str, LicenseAnnotation] = dict(
            license_annotations or {}
        )

    @classmethod
    def from_instance_set_history(
        cls, history: InstanceSetHistory
    ) -> "AnnotatedInstanceSetHistory":
        return cls(history)

    @property
    def images(self) -> List[ImageLocator]:
        """Distinct images referenced by any instance, in first-seen order."""
        seen: Dict[str, ImageLocator] = {}
        for instance in self.history.instances:
            if instance.image is not None:
                seen.setdefault(str(instance.image), instance.image)
        return list(seen.values())

    def add_license_annotation(
        self,
        image: ImageLocator,
        operating_system: OperatingSystemType,
        license_type: LicenseType,
    ) -> None:
        self.license_annotations[str(image)] = LicenseAnnotation(
            operating_system=operating_system, license_type=license_type
        )

    def get_license_annotation(
        self, image: Optional[ImageLocator]
    ) -> LicenseAnnotation:
        """Return the annotation of an image; unknown images yield UNKNOWN/UNKNOWN."""
        if image is not None and str(image) in self.license_annotations:
            return self.license_annotations[str(image)]
        return LicenseAnnotation(OperatingSystemType.UNKNOWN, LicenseType.UNKNOWN)

    def get_instances(
        self,
        operating_systems: OperatingSystemType,
        license_types: LicenseType,
    ) -> Iterator[InstanceHistory]:
        """
        Iterate over instances whose image matches the given flags.

        Args:
            operating_systems: One or more operating system flags
            license_types: One or more license type flags
        """
        for instance in self.history.instances:
            annotation = self.get_license_annotation(instance.image)
            if (
                annotation.operating_system & operating_systems
                and annotation.license_type & license_types
            ):
                yield instance

    #
    # Serialization.
    #

    def to_dict(self) -> Dict:
        return {
            "@type": TYPE_ANNOTATION,
            "annotatedInstanceSetHistory": {
                "history": {
                    "complete": [_encode_instance(i) for i in self.history.complete],
                    "incomplete": [
                        _encode_instance(i) for i in self.history.incomplete
                    ],
                },
                "licenseAnnotations": {
                    image: {
                        "operatingSystem": annotation.operating_system.value,
                        "licenseType": annotation.license_type.value,
                    }
                    for image, annotation in self.license_annotations.items()
                },
            },
        }

    @classmethod
    def from_dict(cls, doc: Dict) -> "AnnotatedInstanceSetHistory":
        """
        Restore an archive from its JSON representation.

        Raises:
            ArchiveFormatError: If the type annotation is missing or wrong,
                or the document is malformed
        """
        if not isinstance(doc, dict) or doc.get("@type") != TYPE_ANNOTATION:
            raise ArchiveFormatError(
                f"Missing or unexpected type annotation, expected {TYPE_ANNOTATION}"
            )

        try:
            body = doc["annotatedInstanceSetHistory"]
            history_doc = body.get("history") or {}
            history = InstanceSetHistory(
                complete=tuple(
                    _decode_instance(i) for i in history_doc.get("complete", [])
                ),
                incomplete=tuple(
                    _decode_instance(i) for i in history_doc.get("incomplete", [])
                ),
            )
            annotations = {
                image: LicenseAnnotation(
                    operating_system=OperatingSystemType(a["operatingSystem"]),
                    license_type=LicenseType(a["licenseType"]),
                )
                for image, a in (body.get("licenseAnnotations") or {}).items()
            }
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ArchiveFormatError(f"Malformed archive: {e}") from e

        return cls(history, annotations)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, text: str) -> "AnnotatedInstanceSetHistory":
        try:
            doc = json.loads(text)
        except json.JSONDecodeError as e:
            raise ArchiveFormatError(f"Archive is not valid JSON: {e}") from e
        return cls.from_dict(doc)

    def serialize(self, writer: TextIO) -> None:
        json.dump(self.to_dict(), writer, indent=2)

    @classmethod
    def deserialize(cls, reader: TextIO) -> "AnnotatedInstanceSetHistory":
        return cls.from_json(reader.read())
