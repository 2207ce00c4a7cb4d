import cv2
import numpy as np
import pytest

from DatabaseIO import ImportDatabase, ReadShape, WriteShape
from ShapeTracking import CollaboratorError


@pytest.fixture
def database(tmp_path, square_factory):
    data = square_factory(3, seed=2)
    for i in range(len(data)):
        cv2.imwrite(str(tmp_path / ('img%02d.png' % i)), data.images[i].astype(np.uint8))
        WriteShape(str(tmp_path / ('img%02d.pts' % i)), data.shapes[i])
    # an image without annotation is ignored
    cv2.imwrite(str(tmp_path / 'unlabeled.png'), np.zeros((8, 8), dtype=np.uint8))
    return tmp_path, data


def test_shape_file_round_trip(tmp_path):
    shape = np.array([[1.5, 2.25], [3.0, 4.0], [10.0, -1.0]])
    WriteShape(str(tmp_path / 'a.pts'), shape)
    np.testing.assert_allclose(ReadShape(str(tmp_path / 'a.pts')), shape, atol=1e-6)


def test_malformed_shape_file_is_a_collaborator_error(tmp_path):
    (tmp_path / 'bad.pts').write_text('version: 1\nn_points: 3\n{\n1 2\n}\n')
    with pytest.raises(CollaboratorError):
        ReadShape(str(tmp_path / 'bad.pts'))
    with pytest.raises(CollaboratorError):
        ReadShape(str(tmp_path / 'missing.pts'))


def test_import_database_loads_images_shapes_and_generated_rects(database):
    directory, data = database
    loaded = ImportDatabase(str(directory), verbose=False)
    assert len(loaded) == 3
    np.testing.assert_allclose(loaded.shapes, data.shapes, atol=1e-5)
    np.testing.assert_array_equal(loaded.images[0], data.images[0])
    np.testing.assert_allclose(loaded.rects[0], np.concatenate([data.shapes[0].min(0), data.shapes[0].max(0)]),
                               atol=1e-5)


def test_import_database_reads_csv_rectangles(database):
    directory, data = database
    np.savetxt(str(directory / 'rects.csv'), data.rects, delimiter=',')
    loaded = ImportDatabase(str(directory), str(directory / 'rects.csv'), verbose=False)
    np.testing.assert_allclose(loaded.rects, data.rects)


def test_import_database_downscales_large_images(database):
    directory, data = database
    loaded = ImportDatabase(str(directory), max_image_size=60, verbose=False)
    assert max(loaded.images[0].shape) == 60
    np.testing.assert_allclose(loaded.shapes, data.shapes * 0.5, atol=1e-5)


def test_import_failures_are_collaborator_errors(database, tmp_path_factory):
    directory, _ = database
    with pytest.raises(CollaboratorError):
        ImportDatabase(str(tmp_path_factory.mktemp('empty')), verbose=False)
    (directory / 'rects.csv').write_text('1,2,3,4\n')
    with pytest.raises(CollaboratorError):
        ImportDatabase(str(directory), str(directory / 'rects.csv'), verbose=False)
