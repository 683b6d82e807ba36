"""End-to-end runs of the document build over the fixture dataset."""

import json

import pytest

from movielens_etl.config import EtlConfig, IdentityMode
from movielens_etl.errors import SourceError
from movielens_etl.scripts.build_documents import print_summary, run


def read_docs(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def make_config(data_dir, out_dir, **overrides):
    values = dict(
        data_dir=data_dir,
        out_dir=out_dir,
        identity_mode=IdentityMode.CREATE,
        update_mappings=True,
        chunk_size=2,
        bcrypt_rounds=4,
    )
    values.update(overrides)
    return EtlConfig(**values)


class TestRun:
    def test_full_build(self, data_dir, out_dir):
        stats = run(make_config(data_dir, out_dir))

        assert stats.movies == 4
        assert stats.ratings == 4
        assert stats.users == 3
        assert stats.similarities == 2
        assert stats.total_documents == 13
        assert stats.skipped_rows["movies"] == 1
        assert stats.skipped_rows["ratings"] == 1
        assert stats.degraded_sources == []

        movies = read_docs(out_dir / "movies.ndjson")
        toy = movies[0]
        assert toy["iIdx"] == 0
        assert toy["ratingStats"] == {"average": 4.0, "count": 3, "lastRatedAt": "1970-01-01T00:00:30Z"}
        assert toy["userTags"] == ["pixar", "funny", "toys", "classic"]
        assert [t["tag"] for t in toy["genomeTags"]] == ["funny", "dark", "toys"]
        assert toy["links"]["imdb"] == "https://www.imdb.com/title/tt0114709/"
        assert [m["iIdx"] for m in movies] == [0, 1, 2, 3]

        sims = read_docs(out_dir / "similarities.ndjson")
        assert [n["movieId"] for n in sims[0]["neighbors"]] == [2, 99, 4]
        assert sims[0]["neighbors"][1]["iIdx"] == 4

    def test_mappings_persisted_when_enabled(self, data_dir, out_dir):
        stats = run(make_config(data_dir, out_dir))

        assert stats.mappings_saved == ["item_map.csv", "user_map.csv"]
        assert (data_dir / "item_map.csv").read_text().splitlines() == [
            "movieId,iIdx", "1,0", "2,1", "3,2", "4,3", "99,4",
        ]
        assert (data_dir / "user_map.csv").read_text().splitlines() == [
            "userId,uIdx", "1,0", "2,1", "3,2",
        ]

    def test_mappings_untouched_without_update_flag(self, data_dir, out_dir):
        before = (data_dir / "item_map.csv").read_text()
        stats = run(make_config(data_dir, out_dir, update_mappings=False))
        assert stats.mappings_saved == []
        assert (data_dir / "item_map.csv").read_text() == before

    def test_lookup_mode_drops_unknown_neighbors(self, data_dir, out_dir):
        stats = run(make_config(data_dir, out_dir, identity_mode=IdentityMode.LOOKUP))

        sims = read_docs(out_dir / "similarities.ndjson")
        assert [n["movieId"] for n in sims[0]["neighbors"]] == [2]
        assert stats.dropped_neighbors == 2
        assert stats.mappings_saved == []

    def test_off_mode_still_remaps_known_similarities(self, data_dir, out_dir):
        run(make_config(data_dir, out_dir, identity_mode=IdentityMode.OFF))

        movies = read_docs(out_dir / "movies.ndjson")
        assert all("iIdx" not in m for m in movies)
        sims = read_docs(out_dir / "similarities.ndjson")
        assert sims[0]["iIdx"] == 0

    def test_missing_ratings_degrades(self, data_dir, out_dir):
        (data_dir / "ratings.csv").unlink()
        (out_dir / "users.ndjson").write_text('{"userId": 1}\n')
        stats = run(make_config(data_dir, out_dir))

        assert "ratings.csv" in stats.degraded_sources
        assert sorted(p.name for p in out_dir.iterdir()) == ["movies.ndjson", "similarities.ndjson"]
        assert stats.movies == 4
        assert all("ratingStats" not in m for m in read_docs(out_dir / "movies.ndjson"))

    def test_missing_optional_inputs_degrade(self, data_dir, out_dir):
        for name in ("links.csv", "tags.csv", "genome-scores.csv", "item_topk_cosine_conc.csv"):
            (data_dir / name).unlink()
        stats = run(make_config(data_dir, out_dir))

        assert stats.movies == 4
        assert stats.similarities == 0
        assert "item_topk_cosine_conc.csv" in stats.degraded_sources
        toy = read_docs(out_dir / "movies.ndjson")[0]
        assert "links" not in toy or not toy["links"].get("tmdb")
        assert "userTags" not in toy

    def test_missing_movies_is_fatal_before_any_output(self, data_dir, out_dir):
        (data_dir / "movies.csv").unlink()
        with pytest.raises(SourceError):
            run(make_config(data_dir, out_dir))
        assert list(out_dir.iterdir()) == []

    def test_empty_movies_is_fatal_before_any_output(self, data_dir, out_dir):
        (data_dir / "movies.csv").write_text("")
        with pytest.raises(SourceError):
            run(make_config(data_dir, out_dir))
        assert list(out_dir.iterdir()) == []

    def test_missing_similarities_removes_stale_output(self, data_dir, out_dir):
        (data_dir / "item_topk_cosine_conc.csv").unlink()
        (out_dir / "similarities.ndjson").write_text('{"_id": "old"}\n')
        run(make_config(data_dir, out_dir))
        assert not (out_dir / "similarities.ndjson").exists()

    def test_first_run_starts_new_mappings(self, data_dir, out_dir):
        (data_dir / "item_map.csv").unlink()
        (data_dir / "user_map.csv").unlink()
        stats = run(make_config(data_dir, out_dir))

        assert stats.new_mappings == ["item_map.csv", "user_map.csv"]
        assert stats.degraded_sources == []
        assert stats.mappings_saved == ["item_map.csv", "user_map.csv"]

    def test_users_get_hashed_passwords_and_a_password_log(self, data_dir, out_dir):
        stats = run(make_config(data_dir, out_dir))

        users = read_docs(out_dir / "users.ndjson")
        assert all(u["passwordHash"].startswith("$2b$") for u in users)
        assert (out_dir / "passwords_log.csv").read_text().splitlines()[0] == "userId,email,password"
        assert stats.passwords_hashed is True


class TestSummary:
    def test_prints_counts_and_indexes(self, data_dir, out_dir, capsys):
        stats = run(make_config(data_dir, out_dir))
        print_summary(stats, 1.5)

        out = capsys.readouterr().out
        assert "Total:" in out
        assert "Skipped rows in movies: 1" in out
        assert "db.users.createIndex" in out
        assert "Passwords: hashed with bcrypt" in out
        assert "Done in 1.5s" in out

    def test_reports_new_mappings_and_unhashed_passwords(self, data_dir, out_dir, capsys):
        (data_dir / "item_map.csv").unlink()
        stats = run(make_config(data_dir, out_dir, hash_passwords=False))
        print_summary(stats, 0.1)

        out = capsys.readouterr().out
        assert "New mappings started: item_map.csv" in out
        assert "Missing/unreadable sources" not in out
        assert "Passwords: NOT hashed" in out
