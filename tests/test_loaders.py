"""Tests for the keyed side-input loaders."""

import pytest

from movielens_etl.config import EtlConfig
from movielens_etl.data.loaders import (
    load_genome_scores,
    load_genome_tags,
    load_links,
    load_rating_stats,
    load_side_inputs,
    load_user_tags,
    normalize_tag,
)
from movielens_etl.data.records import read_table
from movielens_etl.errors import SourceError
from movielens_etl.models import RunStats


class TestLinks:
    def test_links_parse_optional_ids(self, data_dir):
        links = load_links(data_dir / "links.csv")
        assert links[1].imdb_id == 114709
        assert links[1].tmdb_id == 862
        assert links[4].imdb_id is None
        assert links[4].tmdb_id is None
        assert links[1].to_doc() == {
            "movielens": "https://movielens.org/movies/1",
            "imdb": "https://www.imdb.com/title/tt0114709/",
            "tmdb": "https://www.themoviedb.org/movie/862",
        }

    def test_duplicate_movie_last_writer_wins(self, tmp_path):
        path = tmp_path / "links.csv"
        path.write_text("movieId,imdbId,tmdbId\n1,111,10\n1,222,20\n")
        links = load_links(path)
        assert links[1].tmdb_id == 20
        assert links[1].imdb_id == 222

    def test_missing_file_raises_source_error(self, tmp_path):
        with pytest.raises(SourceError):
            load_links(tmp_path / "links.csv")


class TestGenome:
    def test_relevance_filter_and_top_k(self, data_dir):
        names = load_genome_tags(data_dir / "genome-tags.csv")
        genome = load_genome_scores(data_dir / "genome-scores.csv", names, min_relevance=0.5, top_k=2)

        assert [(t.tag, t.relevance) for t in genome[1]] == [("funny", 0.9), ("dark", 0.6)]
        assert [t.to_doc() for t in genome[2]] == [{"tag": "dark", "relevance": 0.7}]

    def test_ties_broken_by_ascending_tag_id(self, tmp_path):
        (tmp_path / "scores.csv").write_text(
            "movieId,tagId,relevance\n1,9,0.8\n1,3,0.8\n1,5,0.8\n1,1,0.95\n"
        )
        names = {1: "a", 3: "c", 5: "e", 9: "i"}
        genome = load_genome_scores(tmp_path / "scores.csv", names, min_relevance=0.5, top_k=3)
        assert [t.tag_id for t in genome[1]] == [1, 3, 5]

    def test_scores_without_tag_name_are_dropped(self, tmp_path):
        (tmp_path / "scores.csv").write_text("movieId,tagId,relevance\n1,1,0.9\n1,2,0.8\n")
        genome = load_genome_scores(tmp_path / "scores.csv", {2: "known"}, min_relevance=0.5, top_k=5)
        assert [t.tag for t in genome[1]] == ["known"]

    def test_chunked_read_matches_single_read(self, data_dir):
        names = load_genome_tags(data_dir / "genome-tags.csv")
        whole = load_genome_scores(data_dir / "genome-scores.csv", names, 0.5, 10, chunksize=None)
        chunked = load_genome_scores(data_dir / "genome-scores.csv", names, 0.5, 10, chunksize=2)
        assert whole == chunked


class TestUserTags:
    def test_normalize_tag(self):
        assert normalize_tag("  Pixar   Animation ") == "pixar animation"

    def test_top_k_by_frequency_ties_by_first_seen(self, data_dir):
        tags = load_user_tags(data_dir / "tags.csv", top_k=2)
        # pixar x2 (first), funny x2, toys x1, classic x1
        assert tags[1] == ["pixar", "funny"]
        assert tags[2] == ["jungle"]

    def test_top_k_zero_returns_empty(self, data_dir):
        assert load_user_tags(data_dir / "tags.csv", top_k=0) == {}


class TestRatingStats:
    def test_mean_count_and_max_timestamp(self, data_dir):
        stats = RunStats()
        rating_stats = load_rating_stats(data_dir / "ratings.csv", stats=stats)

        movie = rating_stats[1]
        assert movie.count == 3
        assert movie.average == pytest.approx(4.0)
        assert movie.last_rated_at == 30
        assert movie.to_doc() == {"average": 4.0, "count": 3, "lastRatedAt": "1970-01-01T00:00:30Z"}
        assert stats.skipped_rows["ratings"] == 1

    def test_chunks_accumulate_into_the_same_movie(self, data_dir):
        rating_stats = load_rating_stats(data_dir / "ratings.csv", chunksize=1)
        assert rating_stats[1].count == 3
        assert rating_stats[1].last_rated_at == 30
        assert rating_stats[2].count == 1


class TestReadTable:
    def test_too_many_fields_is_skipped_and_counted(self, tmp_path):
        path = tmp_path / "links.csv"
        path.write_text("movieId,imdbId,tmdbId\n1,2,3\n4,5,6,7\n8,9,10\n")
        stats = RunStats()

        frames = list(read_table(path, ["movieId", "imdbId", "tmdbId"], source="links", stats=stats))
        assert frames[0]["movieId"].tolist() == ["1", "8"]
        assert stats.skipped_rows["links"] == 1

    def test_empty_file_is_a_source_error(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("")
        with pytest.raises(SourceError):
            list(read_table(path, ["a"]))


class TestSideInputs:
    def test_all_sources_present(self, data_dir):
        side = load_side_inputs(EtlConfig(data_dir=data_dir, top_genome_tags=2, top_user_tags=2))
        assert set(side.links) == {1, 2, 4}
        assert len(side.genome_tags[1]) == 2
        assert side.user_tags[1] == ["pixar", "funny"]
        assert side.rating_stats[1].count == 3

    def test_missing_sources_degrade_to_empty(self, data_dir):
        (data_dir / "links.csv").unlink()
        (data_dir / "genome-tags.csv").unlink()
        stats = RunStats()

        side = load_side_inputs(EtlConfig(data_dir=data_dir), stats=stats)

        assert side.links == {}
        assert side.genome_tags == {}
        assert side.user_tags
        assert "links.csv" in stats.degraded_sources
        assert "genome-tags.csv" in stats.degraded_sources

    def test_precomputed_rating_stats_skip_ratings_file(self, data_dir):
        (data_dir / "ratings.csv").unlink()
        stats = RunStats()
        side = load_side_inputs(EtlConfig(data_dir=data_dir), stats=stats, rating_stats={})
        assert side.rating_stats == {}
        assert "ratings.csv" not in stats.degraded_sources
