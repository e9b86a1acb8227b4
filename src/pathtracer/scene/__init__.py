"""Scene module.

Components:
    intersection: Primitive storage and BVH traversal (closest / any hit)
    manager: SceneManager collecting materials, geometry and lights
    transform: Affine transforms for meshes and boxes
    obj: Wavefront OBJ reader
    description: JSON scene description loader
    scenes: Built-in demo scenes

Typical use:
    >>> scene = SceneManager()
    >>> red = scene.add_lambertian_material((0.65, 0.05, 0.05))
    >>> scene.add_sphere((0, 0, -1), 0.5, red)
    >>> scene.set_camera(ThinLensCamera(lookfrom=(0, 0, 1), lookat=(0, 0, -1)))
    >>> scene.build()
"""
