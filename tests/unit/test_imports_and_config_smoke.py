from assets_resolver import SERVER, Config, Resolver, load_config, main


def test_package_imports() -> None:
    """Importing the package should expose main APIs."""

    assert callable(load_config)
    assert callable(main)
    assert Config is not None
    assert Resolver is not None
    assert SERVER.name == "assets-resolver"


def test_entity_kind_round_trips_through_dict() -> None:
    from assets_resolver.models import EntityInfo, EntityKind

    entity = EntityInfo(id="6", name="Facilities", kind="schema")

    assert entity.kind is EntityKind.SCHEMA
    assert entity.to_dict()["type"] == "schema"
    assert EntityInfo.from_dict(entity.to_dict()) == entity
