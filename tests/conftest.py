"""Shared fixtures: a tiny MovieLens-shaped dataset on disk."""

from pathlib import Path

import pytest

MOVIES = """movieId,title,genres
1,Toy Story (1995),Adventure|Animation|Children|Comedy|Fantasy
2,Jumanji (1995),Adventure|Children|Fantasy
3,Title With (Parens) But No Year,(no genres listed)
abc,Broken Row,Drama
4,Nested (Extra) (2001),Drama||
"""

RATINGS = """userId,movieId,rating,timestamp
1,1,3.0,10
2,1,5.0,30
3,1,4.0,20
1,2,2.5,15
x,2,4.0,5
"""

LINKS = """movieId,imdbId,tmdbId
1,114709,862
2,113497,8844
4,,
"""

GENOME_TAGS = """tagId,tag
1,funny
2,pixar
3,dark
4,toys
"""

GENOME_SCORES = """movieId,tagId,relevance
1,1,0.9
1,2,0.3
1,3,0.6
1,4,0.5
2,3,0.7
"""

TAGS = """userId,movieId,tag,timestamp
1,1,pixar,1
2,1,Pixar ,2
3,1,funny,3
1,1,toys,4
2,1,funny,5
3,1,classic,6
1,2,jungle,7
"""

ITEM_MAP = """movieId,iIdx
1,0
2,1
"""

USER_MAP = """userId,uIdx
1,0
"""

SIMILARITIES = """movieId,neighborId,sim
1,2,0.9
1,99,0.8
1,4,0.7
2,1,0.9
"""


def write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def data_dir(tmp_path):
    d = tmp_path / "ml"
    d.mkdir()
    write(d / "movies.csv", MOVIES)
    write(d / "ratings.csv", RATINGS)
    write(d / "links.csv", LINKS)
    write(d / "genome-tags.csv", GENOME_TAGS)
    write(d / "genome-scores.csv", GENOME_SCORES)
    write(d / "tags.csv", TAGS)
    write(d / "item_map.csv", ITEM_MAP)
    write(d / "user_map.csv", USER_MAP)
    write(d / "item_topk_cosine_conc.csv", SIMILARITIES)
    return d


@pytest.fixture
def out_dir(tmp_path):
    d = tmp_path / "out"
    d.mkdir()
    return d
