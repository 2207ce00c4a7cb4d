import cv2
import numpy as np
from scipy.io import loadmat
import glob
import os
import time

from ShapeTracking import CollaboratorError, InvalidInputError, GenerateBBox
from TrainingData import InputData

################### params ###################
param_max_image_size=2048
param_image_extensions=('.jpg', '.jpeg', '.png', '.bmp')

################### shape ###################
# load shape points file (.pts with "n_points" header and points between braces)
def ReadShape(path):
    try:
        with open(path) as f:
            lines=f.readlines()
    except OSError as e:
        raise CollaboratorError('failed to read %s: %s' % (path, e))
    num_points=None
    shape=[]
    in_points=False
    try:
        for line in lines:
            line=line.strip()
            if line.startswith('n_points'):
                num_points=int(line.split(':')[1])
            elif line=='{':
                in_points=True
            elif line=='}':
                break
            elif in_points and line:
                pair=line.split()
                shape.append([float(pair[0]), float(pair[1])])
    except (ValueError, IndexError) as e:
        raise CollaboratorError('malformed shape file %s: %s' % (path, e))
    if num_points is None or len(shape)!=num_points:
        raise CollaboratorError('malformed shape file %s' % path)
    return np.array(shape)

def WriteShape(path, shape):
    with open(path, 'w') as f:
        f.write('version: 1\nn_points: %d\n{\n' % len(shape))
        for x, y in shape:
            f.write('%f %f\n' % (x, y))
        f.write('}\n')

######################## bbox ##########################
# one [x1, y1, x2, y2] row per image, in database order
def LoadRectsCsv(path):
    try:
        rects=np.loadtxt(path, delimiter=',', ndmin=2)
    except (OSError, ValueError) as e:
        raise CollaboratorError('failed to read rectangles from %s: %s' % (path, e))
    if rects.shape[1]!=4:
        raise CollaboratorError('rectangles in %s must have 4 columns' % path)
    return rects

# bounding_boxes_*.mat of 300-W: image name -> candidate boxes
def LoadBBox(path):
    try:
        file=loadmat(path)['bounding_boxes'][0]
    except (OSError, KeyError, ValueError) as e:
        raise CollaboratorError('failed to read bounding boxes from %s: %s' % (path, e))
    bbox_set={}
    for info in file:
        img_boxes=list(info[0][0])
        img_name=img_boxes[0][0]
        bbox_set[img_name]=np.array([box[0] for box in img_boxes[1:]])
    return bbox_set

# choose the box that contains the shape
def ChooseBox(shape, bboxes):
    for bbox in bboxes:
        if np.all(shape[:, 0]>=bbox[0]) and np.all(shape[:, 0]<=bbox[2]) and \
           np.all(shape[:, 1]>=bbox[1]) and np.all(shape[:, 1]<=bbox[3]):
            return bbox
    return None

########################### database ###########################
# image files having a .pts file next to them
def ListDatabase(directory):
    paths=[]
    for path in sorted(glob.glob(os.path.join(directory, '*'))):
        if os.path.splitext(path)[1].lower() in param_image_extensions and \
           os.path.exists(os.path.splitext(path)[0]+'.pts'):
            paths.append(path)
    return paths

# grayscale image, downscaled so that its longer side is at most max_size
def LoadImage(path, max_size=param_max_image_size):
    img=cv2.imread(path, 0)
    if img is None:
        raise CollaboratorError('failed to load image %s' % path)
    scale=1.
    if max_size and max(img.shape)>max_size:
        scale=float(max_size)/max(img.shape)
        img=cv2.resize(img, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA)
    return img.astype(np.float64), scale

def ImportDatabase(directory, rects_path=None, max_image_size=param_max_image_size, verbose=True):
    t1=time.time()
    paths=ListDatabase(directory)
    if len(paths)==0:
        raise CollaboratorError('no annotated images found in %s' % directory)

    rects=None
    bbox_set=None
    if rects_path is not None:
        if rects_path.endswith('.mat'):
            bbox_set=LoadBBox(rects_path)
        else:
            rects=LoadRectsCsv(rects_path)
            if len(rects)!=len(paths):
                raise CollaboratorError('%s holds %d rectangles for %d images' % (rects_path, len(rects), len(paths)))

    imgs=[]
    shapes=[]
    bboxes=[]
    for i, path in enumerate(paths):
        img, scale=LoadImage(path, max_image_size)
        shape=ReadShape(os.path.splitext(path)[0]+'.pts')*scale
        if rects is not None:
            bbox=rects[i]*scale
        elif bbox_set is not None:
            bbox=ChooseBox(shape/scale, bbox_set.get(os.path.basename(path), []))
            bbox=GenerateBBox(shape) if bbox is None else bbox*scale
        else:
            bbox=GenerateBBox(shape)
        imgs.append(img)
        shapes.append(shape)
        bboxes.append(bbox)
    if verbose:
        print('Loaded', len(imgs), 'images from', directory, 'use:', time.time()-t1, 's')
    try:
        return InputData(imgs, shapes, bboxes)
    except InvalidInputError as e:
        raise CollaboratorError('inconsistent database %s: %s' % (directory, e))
