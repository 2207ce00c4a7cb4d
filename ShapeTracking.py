import numpy as np
from skimage import transform
from sklearn.utils import check_random_state
import pickle
import time

################### params ###################
param_cascade_num=10
param_tree_num=500
param_tree_depth=5
param_pixel_num=400
param_split_test_num=20
param_exponential_lambda=0.1
param_learning_rate=0.08
param_verbose=True

model_format_version=1

################### errors ###################
class ShapeTrackingError(Exception):
    pass

# bad arguments: empty sample set, zero landmarks, mismatched shapes, bad params
class InvalidInputError(ShapeTrackingError, ValueError):
    pass

# dataset import or model persistence failed
class CollaboratorError(ShapeTrackingError, IOError):
    pass

class TrainingParameters(object):

    def __init__(self, num_cascades=param_cascade_num, num_trees=param_tree_num, max_tree_depth=param_tree_depth,
                 num_random_pixel_coordinates=param_pixel_num, num_random_split_tests_per_node=param_split_test_num,
                 exponential_lambda=param_exponential_lambda, learning_rate=param_learning_rate, verbose=param_verbose):
        self.num_cascades=num_cascades
        self.num_trees=num_trees
        self.max_tree_depth=max_tree_depth
        self.num_random_pixel_coordinates=num_random_pixel_coordinates
        self.num_random_split_tests_per_node=num_random_split_tests_per_node
        self.exponential_lambda=exponential_lambda
        self.learning_rate=learning_rate
        self.verbose=verbose

    def validate(self):
        if self.num_cascades<=0:
            raise InvalidInputError('num_cascades must be > 0, got %r' % self.num_cascades)
        if self.num_trees<=0:
            raise InvalidInputError('num_trees must be > 0, got %r' % self.num_trees)
        if self.max_tree_depth<0:
            raise InvalidInputError('max_tree_depth must be >= 0, got %r' % self.max_tree_depth)
        if self.num_random_pixel_coordinates<=0:
            raise InvalidInputError('num_random_pixel_coordinates must be > 0, got %r' % self.num_random_pixel_coordinates)
        if self.num_random_split_tests_per_node<=0:
            raise InvalidInputError('num_random_split_tests_per_node must be > 0, got %r' % self.num_random_split_tests_per_node)
        if not self.exponential_lambda>0:
            raise InvalidInputError('exponential_lambda must be > 0, got %r' % self.exponential_lambda)
        if not 0<self.learning_rate<=1:
            raise InvalidInputError('learning_rate must be in (0, 1], got %r' % self.learning_rate)
        return self

################### shape ###################
# check a shape is a non-empty (L, 2) array
def CheckShape(shape, num_landmarks=None):
    shape=np.asarray(shape, dtype=np.float64)
    if shape.ndim!=2 or shape.shape[1]!=2:
        raise InvalidInputError('shape must be an (L, 2) array, got %s' % (shape.shape,))
    if shape.shape[0]==0:
        raise InvalidInputError('shape has no landmarks')
    if num_landmarks is not None and shape.shape[0]!=num_landmarks:
        raise InvalidInputError('expected %d landmarks, got %d' % (num_landmarks, shape.shape[0]))
    return shape

# corners of the normalized detection frame
def UnitRectangle():
    return np.array([[-1., -1.], [1., -1.], [1., 1.], [-1., 1.]])

# corners of a box [x1, y1, x2, y2]
def RectCorners(rect):
    x1, y1, x2, y2=np.asarray(rect, dtype=np.float64)
    return np.array([[x1, y1], [x2, y1], [x2, y2], [x1, y2]])

# generate bbox from shape
def GenerateBBox(shape):
    shape=CheckShape(shape)
    return np.concatenate([shape.min(0), shape.max(0)])

# least squares similarity transform taking `src` onto `dst` (Umeyama)
def EstimateSimilarityTransform(src, dst):
    src=np.asarray(src, dtype=np.float64)
    dst=np.asarray(dst, dtype=np.float64)
    if src.shape!=dst.shape:
        raise InvalidInputError('point count mismatch: %s vs %s' % (src.shape, dst.shape))
    src_mean=src.mean(0)
    dst_mean=dst.mean(0)
    src_c=src-src_mean
    dst_c=dst-dst_mean
    cov=np.dot(dst_c.T, src_c)/len(src)
    src_var=np.sum(np.square(src_c))/len(src)

    u, d, vt=np.linalg.svd(cov)
    # d is sorted descending, flip the smaller singular direction on reflection
    s=np.eye(2)
    det_cov=np.linalg.det(cov)
    if det_cov<0 or (det_cov==0 and np.linalg.det(u)*np.linalg.det(vt)<0):
        s[1, 1]=-1

    if src_var>0:
        rot=np.dot(u, np.dot(s, vt))
        scale=np.trace(np.dot(np.diag(d), s))/src_var
    else:
        rot=np.eye(2)
        scale=1.

    matrix=np.eye(3)
    matrix[:2, :2]=scale*rot
    matrix[:2, 2]=dst_mean-scale*np.dot(rot, src_mean)
    return transform.SimilarityTransform(matrix=matrix)

# linear (rotation and scale) part of a similarity transform
def LinearPart(sim_trans):
    return sim_trans.params[:2, :2]

# from the normalized frame into the image frame of a detection rectangle
def RectToImageTransform(rect):
    return EstimateSimilarityTransform(UnitRectangle(), RectCorners(rect))

# apply first, then second
def ComposeTransforms(first, second):
    return transform.SimilarityTransform(matrix=np.dot(second.params, first.params))

# index of the landmark nearest to point, first one wins on ties
def FindClosestLandmarkIndex(shape, point):
    shape=np.asarray(shape, dtype=np.float64)
    if len(shape)==0:
        raise InvalidInputError('shape has no landmarks')
    d2=np.sum(np.square(shape-np.asarray(point, dtype=np.float64)), 1)
    return int(np.argmin(d2))

# express absolute coordinates as offsets to their closest landmark
def ShapeRelativePixelCoordinates(shape, abs_coords):
    shape=CheckShape(shape)
    abs_coords=np.asarray(abs_coords, dtype=np.float64).reshape(-1, 2)
    closest=np.array([FindClosestLandmarkIndex(shape, c) for c in abs_coords], dtype=np.int64)
    return abs_coords-shape[closest], closest

################### image ###################
# nearest pixel intensity, coordinates outside the image are clamped to the border
def ReadImage(img, coords):
    img=np.asarray(img)
    if img.ndim==3:
        img=img.mean(2)
    coords=np.rint(np.asarray(coords, dtype=np.float64)).astype(np.int64)
    x=np.clip(coords[:, 0], 0, img.shape[1]-1)
    y=np.clip(coords[:, 1], 0, img.shape[0]-1)
    return img[y, x].astype(np.float64)

################### feature sampler ###################
# uniform random positions inside the bounding box of the mean shape
def SampleCoordinates(mean_shape, num_coords, rng):
    min_c=mean_shape.min(0)
    max_c=mean_shape.max(0)
    coords=np.zeros((num_coords, 2))
    coords[:, 0]=min_c[0]+rng.uniform(0, 1, num_coords)*(max_c[0]-min_c[0])
    coords[:, 1]=min_c[1]+rng.uniform(0, 1, num_coords)*(max_c[1]-min_c[1])
    return coords

# cumulative weights of P(i, j) ~ exp(-lambda*|u_i-u_j|) over all ordered pairs, i!=j
def SplitPairDistribution(coords, exponential_lambda):
    diff=coords[:, None, :]-coords[None, :, :]
    dist=np.sqrt(np.sum(np.square(diff), 2))
    weights=np.exp(-exponential_lambda*dist)
    np.fill_diagonal(weights, 0)
    cdf=np.cumsum(weights.ravel())
    if len(cdf)==0 or cdf[-1]<=0:
        return None
    return cdf

# draw n pixel pairs (i, j) from a pair distribution
def DrawPixelPairs(pair_cdf, num_pixels, n, rng):
    flat=np.searchsorted(pair_cdf, rng.uniform(0, 1, n)*pair_cdf[-1], side='right')
    return np.divmod(flat, num_pixels)

########################## error ###################################
# mean landmark error normalized by the ground truth bounding box diagonal
def ComputeError(shapes, gts):
    err=0
    for i in range(len(shapes)):
        gt=np.asarray(gts[i], dtype=np.float64)
        x1, y1, x2, y2=GenerateBBox(gt)
        diag=np.hypot(x2-x1, y2-y1)
        err+=np.mean(np.sqrt(np.sum(np.square(np.asarray(shapes[i])-gt), 1)))/(diag if diag>0 else 1.)
    return err/max(len(shapes), 1)

####################### regression tree ############################
class RegressionTree(object):

    def __init__(self):
        self.children_left=np.zeros(0, dtype=np.int64)
        self.children_right=np.zeros(0, dtype=np.int64)
        self.feature_i=np.zeros(0, dtype=np.int64)
        self.feature_j=np.zeros(0, dtype=np.int64)
        self.threshold=np.zeros(0)
        self.value=np.zeros((0, 0, 2))
        self.n_node_samples=np.zeros(0, dtype=np.int64)

    @property
    def node_count(self):
        return len(self.children_left)

    def is_leaf(self, node):
        return self.children_left[node]==-1

    # grow the tree top-down on pixel intensities (N, P) and residuals (N, L, 2)
    def fit(self, intensities, residuals, pair_cdf, max_depth, num_split_tests, rng):
        intensities=np.asarray(intensities, dtype=np.float64)
        residuals=np.asarray(residuals, dtype=np.float64)
        if len(residuals)==0:
            raise InvalidInputError('cannot fit a tree on zero samples')
        num_pixels=intensities.shape[1]
        nodes=[]

        def grow(inds, depth):
            node_id=len(nodes)
            node={'left': -1, 'right': -1, 'i': -1, 'j': -1, 'threshold': 0.,
                  'value': residuals[inds].mean(0), 'samples': len(inds)}
            nodes.append(node)
            if depth>=max_depth or len(inds)<2 or pair_cdf is None:
                return node_id
            split=self._best_split(intensities[inds], residuals[inds], pair_cdf, num_pixels, num_split_tests, rng)
            if split is None:
                return node_id
            i, j, threshold, mask=split
            node['i'], node['j'], node['threshold']=i, j, threshold
            node['left']=grow(inds[~mask], depth+1)
            node['right']=grow(inds[mask], depth+1)
            return node_id

        grow(np.arange(len(residuals)), 0)

        self.children_left=np.array([n['left'] for n in nodes], dtype=np.int64)
        self.children_right=np.array([n['right'] for n in nodes], dtype=np.int64)
        self.feature_i=np.array([n['i'] for n in nodes], dtype=np.int64)
        self.feature_j=np.array([n['j'] for n in nodes], dtype=np.int64)
        self.threshold=np.array([n['threshold'] for n in nodes], dtype=np.float64)
        self.value=np.array([n['value'] for n in nodes], dtype=np.float64)
        self.n_node_samples=np.array([n['samples'] for n in nodes], dtype=np.int64)
        return self

    # score all random candidates first, only then partition with the winner
    @staticmethod
    def _best_split(intensities, residuals, pair_cdf, num_pixels, num_split_tests, rng):
        n=len(residuals)
        flat=residuals.reshape(n, -1)
        total=flat.sum(0)
        first, second=DrawPixelPairs(pair_cdf, num_pixels, num_split_tests, rng)
        best=None
        best_score=-np.inf
        for i, j in zip(first.tolist(), second.tolist()):
            diff=intensities[:, i]-intensities[:, j]
            lo, hi=diff.min(), diff.max()
            threshold=rng.uniform(lo, hi) if hi>lo else lo
            mask=diff>threshold
            n_right=np.count_nonzero(mask)
            if n_right==0 or n_right==n:
                continue
            sum_right=flat[mask].sum(0)
            sum_left=total-sum_right
            # n_l*|mu_l|^2 + n_r*|mu_r|^2
            score=np.dot(sum_left, sum_left)/(n-n_right)+np.dot(sum_right, sum_right)/n_right
            if score>best_score:
                best_score=score
                best=(i, j, threshold, mask)
        return best

    # leaf index reached by every row of intensities
    def apply(self, intensities):
        intensities=np.atleast_2d(np.asarray(intensities, dtype=np.float64))
        nodes=np.zeros(len(intensities), dtype=np.int64)
        rows=np.arange(len(intensities))
        active=self.children_left[nodes]!=-1
        while np.any(active):
            cur=nodes[active]
            diff=intensities[rows[active], self.feature_i[cur]]-intensities[rows[active], self.feature_j[cur]]
            nodes[active]=np.where(diff>self.threshold[cur], self.children_right[cur], self.children_left[cur])
            active=self.children_left[nodes]!=-1
        return nodes

    def predict(self, intensities):
        intensities=np.asarray(intensities, dtype=np.float64)
        leaves=self.apply(intensities)
        if intensities.ndim==1:
            return self.value[leaves[0]]
        return self.value[leaves]

    def get_state(self):
        return {'children_left': self.children_left, 'children_right': self.children_right,
                'feature_i': self.feature_i, 'feature_j': self.feature_j, 'threshold': self.threshold,
                'value': self.value, 'n_node_samples': self.n_node_samples}

    @classmethod
    def from_state(cls, state):
        tree=cls()
        for key, val in state.items():
            setattr(tree, key, np.array(val))
        return tree

####################### regressor ############################
# mean shape space residual of every sample: gt-estimate rotated into the mean frame
def GetTarget(td, mean_shape):
    targets=np.zeros_like(td.estimates)
    for i in range(len(td)):
        estimate=td.estimates[i]
        sim_trans=EstimateSimilarityTransform(estimate, mean_shape)
        targets[i]=np.dot(td.ground_truth(i)-estimate, LinearPart(sim_trans).T)
    return targets

class Regressor(object):

    def __init__(self):
        self.pixel_coordinates=np.zeros((0, 2))
        self.closest_landmarks=np.zeros(0, dtype=np.int64)
        self.mean_residual=None
        self.mean_shape=None
        self.trees=[]
        self.learning_rate=1.

    def fit(self, td, mean_shape, params, rng):
        if len(td)==0:
            raise InvalidInputError('cannot fit a regressor on zero samples')
        mean_shape=CheckShape(mean_shape, td.num_landmarks)
        self.mean_shape=mean_shape.copy()
        self.learning_rate=params.learning_rate

        coords=SampleCoordinates(mean_shape, params.num_random_pixel_coordinates, rng)
        self.pixel_coordinates, self.closest_landmarks=ShapeRelativePixelCoordinates(mean_shape, coords)
        pair_cdf=SplitPairDistribution(coords, params.exponential_lambda)

        residuals=GetTarget(td, mean_shape)
        intensities=np.zeros((len(td), len(coords)))
        for i in range(len(td)):
            estimate=td.estimates[i]
            sim_trans=EstimateSimilarityTransform(mean_shape, estimate)
            intensities[i]=self.read_pixel_intensities(sim_trans, estimate, td.image(i))

        self.mean_residual=residuals.mean(0)
        # running boosting residual, updated in place tree after tree
        residuals-=self.mean_residual
        self.trees=[]
        for k in range(params.num_trees):
            if params.verbose:
                print('Building tree %3d' % k, end='\r')
            if k>0:
                residuals-=self.learning_rate*self.trees[-1].predict(intensities)
            tree=RegressionTree().fit(intensities, residuals, pair_cdf, params.max_tree_depth,
                                      params.num_random_split_tests_per_node, rng)
            self.trees.append(tree)
        return self

    # sample the frozen coordinates around the anchors of the current shape
    def read_pixel_intensities(self, sim_trans, shape, img):
        coords=np.dot(self.pixel_coordinates, LinearPart(sim_trans).T)+shape[self.closest_landmarks]
        return ReadImage(img, coords)

    # residuals in mean shape space, after the mean term and after every tree
    def staged_decision(self, intensities):
        intensities=np.asarray(intensities, dtype=np.float64)
        decision=np.broadcast_to(self.mean_residual, intensities.shape[:-1]+self.mean_residual.shape).copy()
        yield decision.copy()
        for tree in self.trees:
            decision+=self.learning_rate*tree.predict(intensities)
            yield decision.copy()

    def decision(self, intensities):
        decision=None
        for decision in self.staged_decision(intensities):
            pass
        return decision

    # image space shape update for one image and shape estimate, undoing the frame change of GetTarget
    def predict(self, img, shape):
        shape=CheckShape(shape, len(self.mean_shape))
        sim_trans=EstimateSimilarityTransform(self.mean_shape, shape)
        intensities=self.read_pixel_intensities(sim_trans, shape, img)
        to_mean=LinearPart(EstimateSimilarityTransform(shape, self.mean_shape))
        return np.dot(self.decision(intensities), np.linalg.inv(to_mean).T)

    def get_state(self):
        return {'pixel_coordinates': self.pixel_coordinates, 'closest_landmarks': self.closest_landmarks,
                'mean_residual': self.mean_residual, 'mean_shape': self.mean_shape,
                'learning_rate': self.learning_rate, 'trees': [t.get_state() for t in self.trees]}

    @classmethod
    def from_state(cls, state):
        reg=cls()
        reg.pixel_coordinates=np.array(state['pixel_coordinates'], dtype=np.float64)
        reg.closest_landmarks=np.array(state['closest_landmarks'], dtype=np.int64)
        reg.mean_residual=np.array(state['mean_residual'], dtype=np.float64)
        reg.mean_shape=np.array(state['mean_shape'], dtype=np.float64)
        reg.learning_rate=float(state['learning_rate'])
        reg.trees=[RegressionTree.from_state(t) for t in state['trees']]
        return reg

####################### tracker ############################
class Tracker(object):

    def __init__(self):
        self.mean_shape=None
        self.cascade=[]

    @property
    def num_landmarks(self):
        return 0 if self.mean_shape is None else len(self.mean_shape)

    def fit(self, td, params=None, random_state=None):
        params=(params or TrainingParameters()).validate()
        if len(td)==0:
            raise InvalidInputError('cannot fit a tracker on zero samples')
        mean_shape=CheckShape(td.mean_shape, td.num_landmarks)
        rng=check_random_state(random_state)
        estimates=td.estimates.copy()

        cascade=[]
        try:
            for stage in range(params.num_cascades):
                t1=time.time()
                if params.verbose:
                    print('Cascade stage:', stage+1)
                reg=Regressor().fit(td, mean_shape, params, rng)
                # move every sample on by this stage before the next one trains
                for i in range(len(td)):
                    td.estimates[i]=td.estimates[i]+reg.predict(td.image(i), td.estimates[i])
                cascade.append(reg)
                if params.verbose:
                    print('Stage', stage+1, 'Error:', ComputeError(td.estimates, td.ground_truths()),
                          'use:', time.time()-t1, 's')
        finally:
            td.estimates=estimates

        self.mean_shape=mean_shape.copy()
        self.cascade=cascade
        return self

    # estimate after every cascade stage
    def staged_predict(self, img, initial_shape):
        if self.mean_shape is None:
            raise InvalidInputError('tracker has not been trained')
        estimate=CheckShape(initial_shape, self.num_landmarks).copy()
        for reg in self.cascade:
            estimate=estimate+reg.predict(img, estimate)
            yield estimate

    def predict(self, img, initial_shape):
        if self.mean_shape is None:
            raise InvalidInputError('tracker has not been trained')
        estimate=CheckShape(initial_shape, self.num_landmarks)
        for estimate in self.staged_predict(img, initial_shape):
            pass
        return estimate

    # start from the mean shape mapped into the image by a normalized frame transform
    def predict_from_transform(self, img, shape_to_image):
        if self.mean_shape is None:
            raise InvalidInputError('tracker has not been trained')
        return self.predict(img, shape_to_image(self.mean_shape))

    # start from the mean shape placed into a detection rectangle [x1, y1, x2, y2]
    def predict_from_rect(self, img, rect):
        return self.predict_from_transform(img, RectToImageTransform(rect))

    def get_state(self):
        return {'version': model_format_version, 'mean_shape': self.mean_shape,
                'cascade': [reg.get_state() for reg in self.cascade]}

    def set_state(self, state):
        if state.get('version')!=model_format_version:
            raise CollaboratorError('unsupported model format version %r' % state.get('version'))
        mean_shape=np.array(state['mean_shape'], dtype=np.float64)
        cascade=[Regressor.from_state(s) for s in state['cascade']]
        self.mean_shape=mean_shape
        self.cascade=cascade
        return self

    def save(self, filename):
        if self.mean_shape is None:
            raise InvalidInputError('tracker has not been trained')
        try:
            with open(filename, 'wb') as f:
                pickle.dump(self.get_state(), f, protocol=pickle.HIGHEST_PROTOCOL)
        except (OSError, pickle.PicklingError) as e:
            raise CollaboratorError('failed to save tracker to %s: %s' % (filename, e))

    def load(self, filename):
        try:
            with open(filename, 'rb') as f:
                state=pickle.load(f)
            if not isinstance(state, dict):
                raise CollaboratorError('%s does not hold a tracker' % filename)
            return self.set_state(state)
        except CollaboratorError:
            raise
        except (OSError, EOFError, pickle.UnpicklingError, ImportError, AttributeError,
                KeyError, TypeError, ValueError) as e:
            raise CollaboratorError('failed to load tracker from %s: %s' % (filename, e))
