import pytest

from backend.app.core.exceptions import NotFoundError, ValidationError
from backend.app.schemas.folder import FolderUpdate
from backend.app.services.folders import CIRCULAR_REFERENCE

from tests.factories import folder_data, live_blobs, storage_used, upload


async def make_chain(services, user_id: str, depth: int):
    """Nested folders, outermost first."""
    chain = []
    parent_id = None
    for _ in range(depth):
        folder = await services.folders.create(user_id, folder_data(parent_id))
        chain.append(folder)
        parent_id = folder.id
    return chain


@pytest.fixture
async def tree(services, user):
    a, b, c = await make_chain(services, user.id, 3)
    files = [
        await upload(services, user.id, 100, folder_id=a.id, file_hash="a"),
        await upload(services, user.id, 200, folder_id=b.id, file_hash="b"),
        await upload(services, user.id, 300, folder_id=c.id, file_hash="c"),
    ]
    return a, b, c, files


# --- Hierarchy ---

async def test_create_under_foreign_parent_rejected(services, user, other_user):
    theirs = await services.folders.create(other_user.id, folder_data())
    with pytest.raises(NotFoundError):
        await services.folders.create(user.id, folder_data(theirs.id))


async def test_folders_are_private(services, user, other_user):
    folder = await services.folders.create(user.id, folder_data())
    with pytest.raises(NotFoundError):
        await services.folders.get(folder.id, other_user.id)
    with pytest.raises(NotFoundError):
        await services.folders.delete(folder.id, other_user.id)


async def test_move_under_descendant_rejected(services, user):
    a, b, c = await make_chain(services, user.id, 3)

    with pytest.raises(ValidationError) as excinfo:
        await services.folders.move(a.id, user.id, c.id)
    assert excinfo.value.message == CIRCULAR_REFERENCE

    with pytest.raises(ValidationError):
        await services.folders.move(a.id, user.id, a.id)

    assert (await services.folders.get(a.id, user.id)).parent_folder_id is None


async def test_valid_moves(services, user):
    a, b, c = await make_chain(services, user.id, 3)
    other = await services.folders.create(user.id, folder_data())

    moved = await services.folders.move(c.id, user.id, None)
    assert moved.parent_folder_id is None

    moved = await services.folders.move(b.id, user.id, other.id)
    assert moved.parent_folder_id == other.id

    # a is no longer above b, so this is fine now
    moved = await services.folders.move(a.id, user.id, b.id)
    assert moved.parent_folder_id == b.id


async def test_cycle_check_bounded_by_depth(services, user):
    services.folders.max_depth = 3
    chain = await make_chain(services, user.id, 5)
    loose = await services.folders.create(user.id, folder_data())

    with pytest.raises(ValidationError):
        await services.folders.move(loose.id, user.id, chain[-1].id)


async def test_cycle_check_survives_corrupt_chain(services, user):
    p, q = await make_chain(services, user.id, 2)
    async with services.database.transaction() as repo:
        (await repo.get_folder(p.id, user.id)).parent_folder_id = q.id
    loose = await services.folders.create(user.id, folder_data())

    with pytest.raises(ValidationError):
        await services.folders.move(loose.id, user.id, p.id)

    # Breadcrumbs stop at the repeated node instead of looping
    trail = await services.folders.breadcrumbs(q.id, user.id)
    assert [f.id for f in trail] == [p.id, q.id]


async def test_rename(services, user):
    folder = await services.folders.create(user.id, folder_data())
    renamed = await services.folders.rename(folder.id, user.id, "bmV3", "aXYy")
    assert renamed.name_encrypted == "bmV3"
    with pytest.raises(ValidationError):
        await services.folders.update(folder.id, user.id, FolderUpdate(name_iv="aXYz"))


async def test_breadcrumbs_and_contents(services, user, tree):
    a, b, c, files = tree

    trail = await services.folders.breadcrumbs(c.id, user.id)
    assert [f.id for f in trail] == [a.id, b.id, c.id]

    contents = await services.folders.get_with_contents(b.id, user.id)
    assert contents.folder.id == b.id
    assert [f.id for f in contents.folders] == [c.id]
    assert [f.id for f in contents.files] == [files[1].id]
    assert contents.counts[b.id] == (1, 1)

    root = await services.folders.get_with_contents(None, user.id)
    assert root.folder is None
    assert [f.id for f in root.folders] == [a.id]
    assert root.files == []


async def test_tree(services, user, tree):
    a, b, c, _ = tree
    other = await services.folders.create(user.id, folder_data())

    roots = await services.folders.tree(user.id)
    by_id = {node["id"]: node for node in roots}
    assert set(by_id) == {a.id, other.id}
    assert by_id[a.id]["children"][0]["id"] == b.id
    assert by_id[a.id]["children"][0]["children"][0]["id"] == c.id

    shallow = await services.folders.tree(user.id, max_depth=1)
    assert all(node["children"] == [] for node in shallow)


async def test_list_with_counts(services, user, tree):
    a, b, c, _ = tree
    folders, total, counts = await services.folders.list(user.id, parent_folder_id=None)
    assert total == 1
    assert folders[0].id == a.id
    assert counts[a.id] == (1, 1)


# --- Delete ---

async def test_delete_non_empty_without_cascade(services, user, tree):
    a, _, _, _ = tree
    with pytest.raises(ValidationError) as excinfo:
        await services.folders.delete(a.id, user.id)
    assert excinfo.value.message == "Folder is not empty"
    assert await storage_used(services, user.id) == 600


async def test_delete_empty_folder(services, user):
    folder = await services.folders.create(user.id, folder_data())
    summary = await services.folders.delete(folder.id, user.id)
    assert summary.folders == 1 and summary.files == 0
    with pytest.raises(NotFoundError):
        await services.folders.get(folder.id, user.id)


async def test_cascade_soft_delete_releases_every_file(services, user, tree):
    a, b, c, files = tree
    summary = await services.folders.delete(a.id, user.id, cascade=True)

    assert (summary.folders, summary.files, summary.bytes_released) == (3, 3, 600)
    assert await storage_used(services, user.id) == 0
    trashed, total = await services.files.list_trash(user.id)
    assert total == 3
    folders, total, _ = await services.folders.list(user.id, is_deleted=True)
    assert total == 3


async def test_cascade_permanent_delete(services, settings, user, tree):
    a, b, c, files = tree
    summary = await services.folders.delete(a.id, user.id, cascade=True, permanent=True)

    assert summary.permanent
    assert summary.bytes_released == 600
    assert await storage_used(services, user.id) == 0
    assert live_blobs(settings, user.id) == []
    for folder in (a, b, c):
        with pytest.raises(NotFoundError):
            await services.folders.restore(folder.id, user.id)


async def test_permanent_delete_of_trashed_tree_refunds_nothing(services, user, tree):
    a, _, _, _ = tree
    await upload(services, user.id, 50, file_hash="root")
    await services.folders.delete(a.id, user.id, cascade=True)
    assert await storage_used(services, user.id) == 50

    summary = await services.folders.delete(a.id, user.id, cascade=True, permanent=True)
    assert summary.files == 3
    assert summary.bytes_released == 0
    assert await storage_used(services, user.id) == 50


# --- Restore ---

async def test_cascade_restore(services, user, tree):
    a, b, c, _ = tree
    await services.folders.delete(a.id, user.id, cascade=True)

    summary = await services.folders.restore(a.id, user.id, cascade=True)
    assert (summary.restored_folders, summary.restored_files) == (3, 3)
    assert summary.skipped_file_ids == []
    assert await storage_used(services, user.id) == 600
    assert [f.id for f in await services.folders.breadcrumbs(c.id, user.id)] == [a.id, b.id, c.id]


async def test_cascade_restore_skips_files_over_quota(services, user, tree):
    a, b, c, files = tree
    await services.folders.delete(a.id, user.id, cascade=True)
    await upload(services, user.id, 800, file_hash="big")

    summary = await services.folders.restore(a.id, user.id, cascade=True)

    assert summary.restored_folders == 3
    assert summary.restored_files == 1
    assert sorted(summary.skipped_file_ids) == sorted([files[1].id, files[2].id])
    assert await storage_used(services, user.id) == 900
    trashed, total = await services.files.list_trash(user.id)
    assert total == 2


async def test_restore_without_cascade_leaves_children(services, user, tree):
    a, b, _, _ = tree
    await services.folders.delete(a.id, user.id, cascade=True)

    summary = await services.folders.restore(a.id, user.id)
    assert summary.restored_folders == 1
    assert summary.restored_files == 0
    with pytest.raises(NotFoundError):
        await services.folders.get(b.id, user.id)


async def test_restore_under_trashed_parent_moves_to_root(services, user, tree):
    a, b, _, _ = tree
    await services.folders.delete(a.id, user.id, cascade=True)

    summary = await services.folders.restore(b.id, user.id)
    assert summary.folder.parent_folder_id is None
