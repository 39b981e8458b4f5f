# tests/test_repository.py
import sqlite3
from dataclasses import dataclass, field

import pytest

from dbmerge.exceptions import UnsupportedShapeError
from dbmerge.merge import RowWriter, model, resolve
from dbmerge.query import QueryFilter, UpdateSpec, gt, in_
from dbmerge.repository import Repository, Entity


@model(table='library_scrolls', columns={
    'scroll_id': {'primary_key': True, 'identity': True},
    'title': {},
    'author': {},
    'shelf': {},
    'title_key': {'computed': True},
})
class Scroll:
    def __init__(self, title=None, author=None, shelf=None, scroll_id=None, title_key=None):
        self.title = title
        self.author = author
        self.shelf = shelf
        self.scroll_id = scroll_id
        self.title_key = title_key


@dataclass
class Household:
    __table__ = 'earth_kingdom_census'
    district: int = field(default=None, metadata={'explicit_key': True})
    household: str = field(default=None, metadata={'explicit_key': True})
    head: str = None


class ScrollFilter(QueryFilter):
    """Scroll filter that can also select by the room a shelf is in."""

    def __init__(self, room=None, **predicates):
        super().__init__(**predicates)
        self.room = room

    @property
    def is_empty(self):
        return super().is_empty and self.room is None

    def apply(self, builder, alias=None):
        super().apply(builder, alias)
        if self.room is not None:
            builder.where('sh.room = :room', room=self.room)


class ScrollEntity(Entity):
    alias = 's'

    def join(self, builder, filter):
        if isinstance(filter, ScrollFilter) and filter.room is not None:
            builder.join('JOIN shelves sh ON sh.shelf_id = s.shelf')


@pytest.fixture
def library_db(sqlite_db):
    """SQLite copy of Wan Shi Tong's library."""
    cursor = sqlite_db.cursor()
    cursor.execute("""
        CREATE TABLE library_scrolls (
            scroll_id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            author TEXT,
            shelf INTEGER,
            title_key TEXT GENERATED ALWAYS AS (upper(title)) VIRTUAL
        )
    """)
    cursor.execute("CREATE TABLE shelves (shelf_id INTEGER PRIMARY KEY, room TEXT)")
    cursor.execute("INSERT INTO shelves VALUES (1, 'Entrance'), (2, 'Restricted')")
    cursor.execute("""
        CREATE TABLE earth_kingdom_census (
            district INTEGER,
            household TEXT,
            head TEXT,
            PRIMARY KEY (district, household)
        )
    """)
    sqlite_db.commit()
    return sqlite_db


@pytest.fixture
def scrolls(library_db):
    return Repository(library_db).entity(Scroll)


@pytest.fixture
def stocked(scrolls):
    """Scroll entity with three scrolls already shelved."""
    scrolls.add_many([
        Scroll('Roots of the Spirit World', 'Wan Shi Tong', 1),
        Scroll('The Darkest Day', 'Unknown', 2),
        Scroll('Firebending Masters', 'Ran and Shaw', 2),
    ])
    return scrolls


class TestRepository:
    """Test the repository itself."""

    def test_capabilities_captured(self, library_db):
        repo = Repository(library_db)

        assert not repo.supports_bulk_merge
        assert repo.server_type == 'sqlite'
        assert repo.paramstyle == 'qmark'

    def test_execute_with_transaction_rolls_back(self, library_db):
        repo = Repository(library_db)

        def failing(cursor):
            cursor.execute("INSERT INTO library_scrolls (title) VALUES ('Lost Scroll')")
            raise RuntimeError('owl attack')

        with pytest.raises(RuntimeError):
            repo.execute_with_transaction(failing)

        assert repo.execute(lambda cursor: cursor.selectinto('SELECT COUNT(*) FROM library_scrolls'))[0] == 0


class TestSingleRowWrites:
    """Test writes on databases without MERGE."""

    def test_add_sets_identity_and_computed(self, scrolls):
        scroll = Scroll('Roots of the Spirit World', 'Wan Shi Tong', 1)

        assert scrolls.add(scroll) == 1
        assert scroll.scroll_id == 1
        assert scroll.title_key == 'ROOTS OF THE SPIRIT WORLD'

    def test_add_many(self, scrolls):
        batch = [Scroll('Scroll A'), Scroll('Scroll B'), Scroll('Scroll C')]

        assert scrolls.add_many(batch) == 3
        assert [s.scroll_id for s in batch] == [1, 2, 3]
        assert scrolls.count() == 3

    def test_add_many_empty(self, scrolls):
        assert scrolls.add_many([]) == 0

    def test_failed_add_many_rolls_back(self, scrolls):
        with pytest.raises(sqlite3.IntegrityError):
            scrolls.add_many([Scroll('Fine Scroll'), Scroll(None)])

        assert scrolls.count() == 0

    def test_update(self, stocked):
        scroll = stocked.get(2)
        scroll.title = 'The Darkest Day (annotated)'

        assert stocked.update(scroll) is True
        assert scroll.title_key == 'THE DARKEST DAY (ANNOTATED)'
        assert stocked.get(2).title == 'The Darkest Day (annotated)'
        assert stocked.update(Scroll('Missing', scroll_id=99)) is False

    def test_update_many_empty_filter_touches_only_matched_rows(self, stocked):
        """Test an empty filter adds no condition beyond the key match."""
        changed = stocked.get(1)
        changed.shelf = 7

        assert stocked.update_many([changed], QueryFilter()) == 1
        assert [s.shelf for s in stocked.list(order_by=['scroll_id'])] == [7, 2, 2]

    def test_filtered_update_needs_merge(self, stocked):
        with pytest.raises(NotImplementedError, match='needs MERGE'):
            stocked.update_many([stocked.get(1)], QueryFilter(author='Wan Shi Tong'))

    def test_upsert_needs_merge(self, scrolls):
        with pytest.raises(NotImplementedError, match='needs MERGE'):
            scrolls.upsert(Scroll('Scroll A'))

    def test_delete(self, stocked):
        assert stocked.delete(Scroll(scroll_id=1)) is True
        assert stocked.delete(Scroll(scroll_id=1)) is False
        assert stocked.delete_many([Scroll(scroll_id=2), Scroll(scroll_id=3)]) == 2
        assert not stocked.exists()

    def test_keyless_update_rejected(self, library_db):
        from dbmerge.merge import describe

        shelves = Repository(library_db).entity(describe('shelves', ['shelf_id', 'room']))
        with pytest.raises(UnsupportedShapeError, match='no primary_key'):
            shelves.update_many([{'shelf_id': 1, 'room': 'Lobby'}])

    def test_composite_key_records(self, library_db):
        census = Repository(library_db).entity(Household)
        census.add_many([Household(1, 'A', 'Bumi'), Household(2, 'B', 'Toph')])

        assert census.get({'district': 2, 'household': 'B'}) == Household(2, 'B', 'Toph')
        assert census.get(Household(1, 'A')).head == 'Bumi'
        with pytest.raises(ValueError, match='composite key'):
            census.get(1)


class TestReads:
    """Test filtered reads."""

    def test_get(self, stocked):
        scroll = stocked.get(1)

        assert isinstance(scroll, Scroll)
        assert scroll.title == 'Roots of the Spirit World'
        assert scroll.title_key == 'ROOTS OF THE SPIRIT WORLD'
        assert stocked.get(42) is None

    def test_list(self, stocked):
        found = stocked.list(QueryFilter(shelf=2), order_by=['-scroll_id'])
        assert [s.title for s in found] == ['Firebending Masters', 'The Darkest Day']

        assert len(stocked.list(top=2)) == 2

    def test_get_one(self, stocked):
        assert stocked.get_one(QueryFilter(author='Unknown')).scroll_id == 2
        assert stocked.get_one(QueryFilter(author='Aang')) is None

    def test_aggregates(self, stocked):
        assert stocked.count() == 3
        assert stocked.count(QueryFilter(shelf=2)) == 2
        assert stocked.exists(QueryFilter(scroll_id=gt(2)))
        assert not stocked.exists(QueryFilter(author='Koh'))
        assert stocked.min('scroll_id') == 1
        assert stocked.max('shelf', QueryFilter(author='Wan Shi Tong')) == 1

    def test_join_hook(self, library_db):
        """Test entity hooks can join another table for a typed filter."""
        scrolls = ScrollEntity(Repository(library_db), Scroll)
        scrolls.add_many([Scroll('Open Scroll', shelf=1), Scroll('Sealed Scroll', shelf=2)])

        found = scrolls.list(ScrollFilter(room='Restricted'))

        assert [s.title for s in found] == ['Sealed Scroll']
        assert scrolls.count(ScrollFilter(room='Entrance')) == 1
        assert scrolls.count() == 2

    def test_dict_cursor_repository(self, library_db):
        """Test entity reads map rows onto records whatever cursor the repository uses."""
        scrolls = Repository(library_db, cursor_type='dict').entity(Scroll)
        scrolls.add_many([Scroll('Roots of the Spirit World', 'Wan Shi Tong', 1),
                          Scroll('The Darkest Day', 'Unknown', 2)])

        assert scrolls.get(2).author == 'Unknown'
        assert [s.title_key for s in scrolls.list(order_by=['scroll_id'])] == \
            ['ROOTS OF THE SPIRIT WORLD', 'THE DARKEST DAY']
        assert scrolls.count(QueryFilter(shelf=1)) == 1

    def test_row_writer_on_dict_cursor(self, stocked, library_db):
        scroll = RowWriter(library_db.cursor('dict'), resolve(Scroll)).select(3)

        assert isinstance(scroll, Scroll)
        assert (scroll.scroll_id, scroll.title, scroll.shelf) == (3, 'Firebending Masters', 2)


class TestWhereWrites:
    """Test updates and deletes by filter."""

    def test_update_where(self, stocked):
        affected = stocked.update_where(UpdateSpec(shelf=5), QueryFilter(shelf=2))

        assert affected == 2
        assert stocked.count(QueryFilter(shelf=5)) == 2

    def test_update_where_requires_filter(self, stocked):
        with pytest.raises(UnsupportedShapeError, match='all_rows=True'):
            stocked.update_where(UpdateSpec(shelf=5))
        with pytest.raises(UnsupportedShapeError, match='all_rows=True'):
            stocked.update_where(UpdateSpec(shelf=5), QueryFilter())
        assert stocked.count(QueryFilter(shelf=5)) == 0

    def test_update_where_all_rows(self, stocked):
        assert stocked.update_where(UpdateSpec(shelf=5), all_rows=True) == 3

    def test_delete_where(self, stocked):
        assert stocked.delete_where(QueryFilter(author='Unknown')) == 1
        assert stocked.count() == 2

    def test_delete_where_requires_filter(self, stocked):
        with pytest.raises(UnsupportedShapeError, match='all_rows=True'):
            stocked.delete_where(QueryFilter())
        assert stocked.count() == 3

        assert stocked.delete_where(all_rows=True) == 3
        assert stocked.count() == 0


class TestBulkPath:
    """Test the façade on a database with MERGE support."""

    @pytest.fixture
    def census(self, fake_sqlserver):
        server, db = fake_sqlserver(resolve(Household))
        for district, household, head in [(1, 'A', 'Bumi'), (2, 'B', 'Toph'), (3, 'C', 'Haru')]:
            server.insert_row({'district': district, 'household': household, 'head': head})
        return server, Repository(db).entity(Household)

    def test_writes_use_merge_in_a_transaction(self, census):
        server, households = census

        assert households.upsert_many([Household(1, 'A', 'Kyoshi'), Household(4, 'D', 'Chong')]) == 2
        assert all(sql.startswith('MERGE') for sql, _ in server.statements)
        assert server.commits == 1
        assert len(server.rows) == 4

    def test_empty_filter_touches_only_matched_rows(self, census):
        server, households = census

        assert households.update_many([Household(1, 'A', 'Kyoshi')], QueryFilter()) == 1
        assert [row['head'] for row in server.rows.values()] == ['Kyoshi', 'Toph', 'Haru']
        assert 'WHEN MATCHED AND' not in server.statements[-1][0]

    def test_filtered_delete(self, census):
        server, households = census
        households.delete_many([Household(1, 'A')], QueryFilter(head='Bumi'))

        sql, params = server.statements[-1]
        assert 'WHEN MATCHED AND (Target.head = ?) THEN\n    DELETE' in sql
        assert params == [1, 'A', 'Bumi']

    def test_failure_rolls_back(self, census):
        server, households = census
        server.fail_on_merge = 1

        with pytest.raises(Exception, match='Simulated failure'):
            households.add_many([Household(5, 'E', 'Sud')])
        assert server.rollbacks == 1
        assert server.commits == 0

    def test_delete_where_without_filter_issues_no_sql(self, census):
        server, households = census
        with pytest.raises(UnsupportedShapeError):
            households.delete_where()
        assert server.statements == []

    def test_filter_hook_used_for_merge(self, fake_sqlserver):
        """Test entity filter hooks shape the MERGE condition of filtered writes."""
        class HeadFilter(QueryFilter):
            def __init__(self, heads=(), **predicates):
                super().__init__(**predicates)
                self.heads = list(heads)

        class HouseholdEntity(Entity):
            def filter(self, builder, filter):
                builder.filter(filter)
                if isinstance(filter, HeadFilter) and filter.heads:
                    builder.add('head', in_(filter.heads))

        server, db = fake_sqlserver(resolve(Household))
        server.insert_row({'district': 1, 'household': 'A', 'head': 'Bumi'})
        households = HouseholdEntity(Repository(db), Household)

        assert households.update_many([Household(1, 'A', 'Kyoshi')], HeadFilter(heads=['Bumi', 'Toph'])) == 1

        sql, params = server.statements[-1]
        assert 'WHEN MATCHED AND (Target.head IN (?, ?)) THEN' in sql
        assert params[-2:] == ['Bumi', 'Toph']

    def test_join_hook_rejected_for_merge(self, fake_sqlserver):
        server, db = fake_sqlserver(resolve(Scroll))
        scrolls = ScrollEntity(Repository(db), Scroll)

        with pytest.raises(UnsupportedShapeError, match='cannot join'):
            scrolls.delete_many([Scroll(scroll_id=1)], ScrollFilter(room='Restricted'))
        assert server.statements == []
