from photoface_cluster.cli import main
from photoface_cluster.faces_io import read_faces_parquet, write_faces_parquet

from conftest import make_face


def test_import_name_and_export(tmp_path, make_photo, capsys):
    db_path = str(tmp_path / "cli.db")
    faces_in = tmp_path / "in.parquet"
    write_faces_parquet(faces_in, [
        make_photo("p1", [make_face("p1:0", [0.0, 0.0]), make_face("p1:1", [4.0, 4.0])], taken_at=1.0),
        make_photo("p2", [make_face("p2:0", [0.02, 0.0])], taken_at=2.0),
    ])

    assert main(["--db", db_path, "import-faces", str(faces_in)]) == 0
    out = capsys.readouterr().out.splitlines()
    assert len(out) == 2
    person_id, name, count = out[0].split("\t")
    assert (name, count) == ("Person 1", "2 photos")

    assert main(["--db", db_path, "name", person_id, "Alice"]) == 0
    assert main(["--db", db_path, "recluster"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0].split("\t")[1:] == ["Alice", "2 photos"]

    faces_out = tmp_path / "out.parquet"
    assert main(["--db", db_path, "export-faces", str(faces_out)]) == 0
    assert sorted(f.id for p in read_faces_parquet(faces_out) for f in p.faces) == ["p1:0", "p1:1", "p2:0"]


def test_unknown_ids_fail(tmp_path, capsys):
    db_path = str(tmp_path / "cli.db")
    assert main(["--db", db_path, "people"]) == 0
    assert "No people found." in capsys.readouterr().out
    assert main(["--db", db_path, "name", "person-missing", "Bob"]) == 1
    assert main(["--db", db_path, "delete-photo", "nope"]) == 1
