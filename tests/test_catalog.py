from backend.catalog import list_public_products, to_public_product


def test_public_view_drops_admin_fields(seed_product):
    document = seed_product()

    public = to_public_product(document)

    assert set(public) == {
        "id",
        "name",
        "description",
        "productType",
        "baseImageURL",
        "additionalImageURLs",
        "dimensions",
        "gstRate",
    }
    assert public["id"] == str(document["_id"])
    assert public["dimensions"][1] == {"dimensionName": "3mm", "basePrice": 12.5}


def test_dimension_entries_are_reduced_to_name_and_price(seed_product):
    document = seed_product(
        dimensions=[{"dimensionName": "2mm", "basePrice": 10.0, "sku": "WP-2"}]
    )

    assert to_public_product(document)["dimensions"] == [
        {"dimensionName": "2mm", "basePrice": 10.0}
    ]


def test_public_listing_only_contains_active_products(repository, seed_product):
    seed_product(name="Visible")
    seed_product(name="Retired", isActive=False)

    names = [product["name"] for product in list_public_products(repository)]

    assert names == ["Visible"]
