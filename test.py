from argparse import ArgumentParser
import time

from ShapeTracking import *
from DatabaseIO import ImportDatabase, param_max_image_size

if __name__=='__main__':
    parser=ArgumentParser(description='Evaluate a trained tracker on a landmark database.')
    parser.add_argument('model', help='trained cascade of regressors file')
    parser.add_argument('database', help='directory of images with .pts landmark files')
    parser.add_argument('-r', '--rectangles', default=None, help='initial detection rectangles (.csv or .mat)')
    parser.add_argument('--load-max-size', type=int, default=param_max_image_size)
    args=parser.parse_args()

    tracker=Tracker().load(args.model)
    data=ImportDatabase(args.database, args.rectangles, args.load_max_size)
    test_shapes=np.array([RectToImageTransform(rect)(tracker.mean_shape) for rect in data.rects])
    print('Initial Error:', ComputeError(test_shapes, data.shapes))

    t1=time.time()
    stages=[list(tracker.staged_predict(data.images[i], test_shapes[i])) for i in range(len(data))]
    print('predict:', (time.time()-t1)/len(data), 's per image')
    for k in range(len(tracker.cascade)):
        print('Stage', k+1, 'Error:', ComputeError([s[k] for s in stages], data.shapes))
