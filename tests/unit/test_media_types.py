from hangmigrate.core.media_types import extension_for_media_type, parse_media_type


def test_extension_table_and_prefixes() -> None:
    assert extension_for_media_type("image/jpeg") == "jpg"
    assert extension_for_media_type("image/png") == "png"
    assert extension_for_media_type("image/gif") == "gif"
    assert extension_for_media_type("image/webp") == "webp"
    assert extension_for_media_type("video/mp4") == "mp4"
    assert extension_for_media_type("application/octet-stream") == ""
    assert extension_for_media_type("") == ""
    assert extension_for_media_type(None) == ""


def test_parse_media_type_strips_parameters() -> None:
    assert parse_media_type("text/html; charset=UTF-8") == "text/html"
    assert parse_media_type("IMAGE/JPEG") == "image/jpeg"
    assert parse_media_type(None) == ""


def test_unsafe_subtypes_get_no_extension() -> None:
    assert extension_for_media_type("image/svg+xml") == "svg+xml"
    assert extension_for_media_type("image/vnd.microsoft.icon") == "vnd.microsoft.icon"
    assert extension_for_media_type("image/../../../escaped") == ""
    assert extension_for_media_type("video/a/b") == ""
    assert extension_for_media_type("image/.hidden") == ""
    assert extension_for_media_type("image/a..b") == ""
    assert extension_for_media_type("image/") == ""
    assert extension_for_media_type("image/x\\y") == ""
