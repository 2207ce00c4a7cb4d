from argparse import ArgumentParser
import time

from ShapeTracking import *
from TrainingData import *
from DatabaseIO import ImportDatabase, param_max_image_size

def ParseArgs():
    parser=ArgumentParser(description='Train a cascade of regressors using a landmark database and initial rectangles.')
    parser.add_argument('database', help='directory of images with .pts landmark files')
    parser.add_argument('-r', '--rectangles', default=None, help='initial detection rectangles (.csv or .mat)')
    parser.add_argument('-o', '--output', default='tracker.bin', help='trained cascade of regressors file')
    parser.add_argument('--load-max-size', type=int, default=param_max_image_size, help='maximum size of images in the database')
    parser.add_argument('--train-num-cascades', type=int, default=param_cascade_num)
    parser.add_argument('--train-num-trees', type=int, default=param_tree_num)
    parser.add_argument('--train-max-depth', type=int, default=param_tree_depth)
    parser.add_argument('--train-num-pixels', type=int, default=param_pixel_num)
    parser.add_argument('--train-num-splits', type=int, default=param_split_test_num)
    parser.add_argument('--train-lambda', type=float, default=param_exponential_lambda, help='prior that favors closer pixel coordinates')
    parser.add_argument('--train-learn', type=float, default=param_learning_rate, help='learning rate of each tree')
    parser.add_argument('--create-num-shapes', type=int, default=param_shapes_per_image)
    parser.add_argument('--create-no-combinations', action='store_true', help='disable linear combinations of shapes')
    parser.add_argument('--validation-fraction', type=float, default=param_validation_fraction)
    parser.add_argument('--seed', type=int, default=None)
    parser.add_argument('--quiet', action='store_true')
    return parser.parse_args()

if __name__=='__main__':
    args=ParseArgs()
    params=TrainingParameters(num_cascades=args.train_num_cascades, num_trees=args.train_num_trees,
                              max_tree_depth=args.train_max_depth, num_random_pixel_coordinates=args.train_num_pixels,
                              num_random_split_tests_per_node=args.train_num_splits, exponential_lambda=args.train_lambda,
                              learning_rate=args.train_learn, verbose=not args.quiet).validate()
    create_params=SampleCreationParameters(shapes_per_image=args.create_num_shapes, transform_perturbations_per_shape=0,
                                           use_linear_combinations_of_shapes=not args.create_no_combinations)
    rng=np.random.RandomState(args.seed)

    inputs=ImportDatabase(args.database, args.rectangles, args.load_max_size, verbose=not args.quiet)
    train_data, validation=RandomPartition(inputs, args.validation_fraction, rng)
    td=CreateTrainingSamples(train_data, create_params, rng)
    print('Initial Error:', ComputeError(td.estimates, td.ground_truths()))

    t1=time.time()
    tracker=Tracker().fit(td, params, rng)
    print('Training use:', time.time()-t1, 's')
    print('Saving tracker to', args.output)
    tracker.save(args.output)

    if len(validation)>0:
        validation_params=SampleCreationParameters(shapes_per_image=1, transform_perturbations_per_shape=10,
                                                   use_linear_combinations_of_shapes=False)
        tdv=CreateTrainingSamples(validation, validation_params, rng)
        # start from the mean shape placed by every perturbed rectangle transform
        initial=[tdv.shape_to_image[i](tracker.mean_shape) for i in range(len(tdv))]
        shapes=[tracker.predict_from_transform(tdv.image(i), tdv.shape_to_image[i]) for i in range(len(tdv))]
        print('Validation Error:', ComputeError(initial, tdv.ground_truths()), '->',
              ComputeError(shapes, tdv.ground_truths()))
