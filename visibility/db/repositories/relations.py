"""Static mapping from entity relationships to cached library tables.

Shared by the SQLite and Postgres library repositories. Every relation is
read source -> target: ``source_*`` columns select rows, ``target_*``
columns are returned.
"""
from __future__ import annotations

from dataclasses import dataclass

from visibility.entity_refs import EntityType


@dataclass(frozen=True)
class Junction:
    table: str
    source_id: str
    source_instance: str
    target_id: str
    target_instance: str
    live_filter: str = ""


ENTITY_TABLES: dict[EntityType, str] = {
    EntityType.SCENE: "library_scenes",
    EntityType.PERFORMER: "library_performers",
    EntityType.STUDIO: "library_studios",
    EntityType.TAG: "library_tags",
    EntityType.GROUP: "library_groups",
    EntityType.GALLERY: "library_galleries",
    EntityType.IMAGE: "library_images",
}

_SCENE_PERFORMERS = Junction("scene_performers", "performer_id", "performer_instance_id", "scene_id", "scene_instance_id")
_SCENE_TAGS = Junction("scene_tags", "tag_id", "tag_instance_id", "scene_id", "scene_instance_id")
_SCENE_INHERITED_TAGS = Junction("scene_inherited_tags", "tag_id", "tag_instance_id", "scene_id", "scene_instance_id")
_SCENE_GROUPS = Junction("scene_groups", "group_id", "group_instance_id", "scene_id", "scene_instance_id")
_SCENE_GALLERIES = Junction("scene_galleries", "gallery_id", "gallery_instance_id", "scene_id", "scene_instance_id")
_IMAGE_GALLERIES = Junction("image_galleries", "gallery_id", "gallery_instance_id", "image_id", "image_instance_id")
_IMAGE_PERFORMERS = Junction("image_performers", "performer_id", "performer_instance_id", "image_id", "image_instance_id")
_PERFORMER_TAGS = Junction("performer_tags", "tag_id", "tag_instance_id", "performer_id", "performer_instance_id")
_STUDIO_TAGS = Junction("studio_tags", "tag_id", "tag_instance_id", "studio_id", "studio_instance_id")
_GROUP_TAGS = Junction("group_tags", "tag_id", "tag_instance_id", "group_id", "group_instance_id")
# Studio ownership lives on the scene/image row; both share the row's instance.
_SCENE_STUDIO = Junction("library_scenes", "studio_id", "instance_id", "id", "instance_id", "deleted_at IS NULL")
_IMAGE_STUDIO = Junction("library_images", "studio_id", "instance_id", "id", "instance_id", "deleted_at IS NULL")

RELATIONS: dict[tuple[EntityType, EntityType], tuple[Junction, ...]] = {
    (EntityType.PERFORMER, EntityType.SCENE): (_SCENE_PERFORMERS,),
    (EntityType.PERFORMER, EntityType.IMAGE): (_IMAGE_PERFORMERS,),
    (EntityType.STUDIO, EntityType.SCENE): (_SCENE_STUDIO,),
    (EntityType.STUDIO, EntityType.IMAGE): (_IMAGE_STUDIO,),
    (EntityType.TAG, EntityType.SCENE): (_SCENE_TAGS, _SCENE_INHERITED_TAGS),
    (EntityType.TAG, EntityType.PERFORMER): (_PERFORMER_TAGS,),
    (EntityType.TAG, EntityType.STUDIO): (_STUDIO_TAGS,),
    (EntityType.TAG, EntityType.GROUP): (_GROUP_TAGS,),
    (EntityType.GROUP, EntityType.SCENE): (_SCENE_GROUPS,),
    (EntityType.GALLERY, EntityType.SCENE): (_SCENE_GALLERIES,),
    (EntityType.GALLERY, EntityType.IMAGE): (_IMAGE_GALLERIES,),
}


def junctions_for(source_type: EntityType, target_type: EntityType) -> tuple[Junction, ...]:
    try:
        return RELATIONS[(source_type, target_type)]
    except KeyError:
        raise ValueError(f"No relation from {source_type.value} to {target_type.value}") from None
