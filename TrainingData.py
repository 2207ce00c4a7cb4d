import numpy as np
from skimage import transform
from sklearn.utils import check_random_state

from ShapeTracking import (InvalidInputError, CheckShape, GenerateBBox, RectToImageTransform,
                           ComposeTransforms)

################### params ###################
param_shapes_per_image=20
param_transform_perturbations_per_shape=0
param_use_linear_combinations=True
param_perturb_scale=0.1
param_perturb_rotation=0.2
param_perturb_translation=0.1
param_validation_fraction=0.01

class SampleCreationParameters(object):

    def __init__(self, shapes_per_image=param_shapes_per_image,
                 transform_perturbations_per_shape=param_transform_perturbations_per_shape,
                 use_linear_combinations_of_shapes=param_use_linear_combinations,
                 perturb_scale=param_perturb_scale, perturb_rotation=param_perturb_rotation,
                 perturb_translation=param_perturb_translation):
        self.shapes_per_image=shapes_per_image
        self.transform_perturbations_per_shape=transform_perturbations_per_shape
        self.use_linear_combinations_of_shapes=use_linear_combinations_of_shapes
        # perturbation ranges, translation is in normalized frame units
        self.perturb_scale=perturb_scale
        self.perturb_rotation=perturb_rotation
        self.perturb_translation=perturb_translation

    def validate(self):
        if self.shapes_per_image<=0:
            raise InvalidInputError('shapes_per_image must be > 0, got %r' % self.shapes_per_image)
        if self.transform_perturbations_per_shape<0:
            raise InvalidInputError('transform_perturbations_per_shape must be >= 0, got %r'
                                    % self.transform_perturbations_per_shape)
        if not 0<=self.perturb_scale<1:
            raise InvalidInputError('perturb_scale must be in [0, 1), got %r' % self.perturb_scale)
        return self

################### input data ###################
class InputData(object):
    """Images, ground truth shapes in image space and detection rectangles [x1, y1, x2, y2].

    Missing rectangles are generated from the shapes.
    """

    def __init__(self, images, shapes, rects=None):
        if len(shapes)==0:
            raise InvalidInputError('input data holds no shapes')
        if len(images)!=len(shapes):
            raise InvalidInputError('got %d images but %d shapes' % (len(images), len(shapes)))
        num_landmarks=len(CheckShape(shapes[0]))
        self.images=list(images)
        self.shapes=np.array([CheckShape(s, num_landmarks) for s in shapes])
        if rects is None:
            rects=[GenerateBBox(s) for s in self.shapes]
        if len(rects)!=len(shapes):
            raise InvalidInputError('got %d rectangles but %d shapes' % (len(rects), len(shapes)))
        self.rects=np.array(rects, dtype=np.float64).reshape(-1, 4)

    def __len__(self):
        return len(self.shapes)

    @property
    def num_landmarks(self):
        return self.shapes.shape[1]

    def subset(self, inds):
        return InputData([self.images[i] for i in inds], self.shapes[inds], self.rects[inds])

# split off a random fraction of the images for validation
def RandomPartition(data, fraction=param_validation_fraction, random_state=None):
    if not 0<=fraction<1:
        raise InvalidInputError('fraction must be in [0, 1), got %r' % fraction)
    rng=check_random_state(random_state)
    inds=rng.permutation(len(data))
    num_validation=int(round(len(data)*fraction))
    if num_validation==len(data):
        num_validation-=1
    return data.subset(np.sort(inds[num_validation:])), data.subset(np.sort(inds[:num_validation]))

# express every ground truth shape in the frame of its detection rectangle
def NormalizeShapes(data):
    shape_to_image=[RectToImageTransform(rect) for rect in data.rects]
    normalized=np.array([t.inverse(shape) for t, shape in zip(shape_to_image, data.shapes)])
    return normalized, shape_to_image

def MeanShape(data):
    normalized, _=NormalizeShapes(data)
    return normalized.mean(0)

################### training data ###################
class TrainingData(object):
    """Working set of training samples.

    Sample k refers to image `input_idx[k]` of `input`, holds the current image space
    estimate `estimates[k]` and the transform `shape_to_image[k]` that placed its
    initial shape from the normalized frame into the image.
    """

    def __init__(self, input_data, mean_shape, input_idx, estimates, shape_to_image):
        self.input=input_data
        self.mean_shape=CheckShape(mean_shape, input_data.num_landmarks)
        self.input_idx=np.asarray(input_idx, dtype=np.int64)
        self.estimates=np.array(estimates, dtype=np.float64)
        if len(self.input_idx)==0 and self.estimates.size==0:
            self.estimates=self.estimates.reshape(0, input_data.num_landmarks, 2)
        if self.estimates.shape!=(len(self.input_idx), input_data.num_landmarks, 2):
            raise InvalidInputError('expected %d estimates of %d landmarks, got array of shape %s'
                                    % (len(self.input_idx), input_data.num_landmarks, self.estimates.shape))
        self.shape_to_image=list(shape_to_image)
        if len(self.shape_to_image)!=len(self.input_idx):
            raise InvalidInputError('got %d transforms for %d samples'
                                    % (len(self.shape_to_image), len(self.input_idx)))

    def __len__(self):
        return len(self.input_idx)

    @property
    def num_landmarks(self):
        return self.input.num_landmarks

    def image(self, i):
        return self.input.images[self.input_idx[i]]

    def ground_truth(self, i):
        return self.input.shapes[self.input_idx[i]]

    def ground_truths(self):
        return self.input.shapes[self.input_idx]

# random similarity close to identity, applied in the normalized frame
def RandomPerturbation(params, rng):
    return transform.SimilarityTransform(scale=1+rng.uniform(-params.perturb_scale, params.perturb_scale),
                                         rotation=rng.uniform(-params.perturb_rotation, params.perturb_rotation),
                                         translation=rng.uniform(-params.perturb_translation,
                                                                 params.perturb_translation, 2))

# initial normalized shapes for image i, drawn from the other training shapes
def InitialShapes(i, normalized, mean_shape, params, rng):
    others=np.array([k for k in range(len(normalized)) if k!=i], dtype=np.int64)
    if len(others)==0:
        return [mean_shape.copy() for _ in range(params.shapes_per_image)]
    picks=rng.choice(others, params.shapes_per_image, replace=len(others)<params.shapes_per_image)
    shapes=[]
    for pick in picks:
        if params.use_linear_combinations_of_shapes and len(others)>=2 and rng.uniform()<0.5:
            k=min(len(others), rng.randint(2, 4))
            inds=rng.choice(others, k, replace=False)
            weights=rng.dirichlet(np.ones(k))
            shapes.append(np.tensordot(weights, normalized[inds], 1))
        else:
            shapes.append(normalized[pick].copy())
    return shapes

# prepare training data, data augmentation, initialize estimates
def CreateTrainingSamples(data, params=None, random_state=None):
    params=(params or SampleCreationParameters()).validate()
    rng=check_random_state(random_state)
    normalized, to_image=NormalizeShapes(data)
    mean_shape=normalized.mean(0)

    input_idx=[]
    estimates=[]
    shape_to_image=[]
    for i in range(len(data)):
        for init in InitialShapes(i, normalized, mean_shape, params, rng):
            if params.transform_perturbations_per_shape==0:
                trans=[to_image[i]]
            else:
                trans=[ComposeTransforms(RandomPerturbation(params, rng), to_image[i])
                       for _ in range(params.transform_perturbations_per_shape)]
            for t in trans:
                input_idx.append(i)
                estimates.append(t(init))
                shape_to_image.append(t)

    # shuffle
    order=rng.permutation(len(input_idx))
    return TrainingData(data, mean_shape, np.array(input_idx)[order], np.array(estimates)[order],
                        [shape_to_image[k] for k in order])
