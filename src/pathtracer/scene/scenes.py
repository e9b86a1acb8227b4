"""Demonstration scenes.

Every factory returns a SceneManager with its camera set; call
``build()`` (or pass it to ``render()``) to upload it. The scenes need no
asset files: environment maps and image textures are generated
procedurally.

Available scenes:

- ``balls``: a field of small random spheres around three large ones
  (diffuse, glass, metal) on a checkered ground, with depth of field and
  motion-blurred diffuse spheres under a sky color.
- ``cornell``: the Cornell box with a ceiling area light, a principled
  sphere, a tall metal box and a short diffuse box.
- ``environment``: a mirror sphere lit by a procedural sky map and a
  rectangular area light.
- ``bsdf``: rows of principled spheres with increasing roughness
  (dielectric, metal, rough glass) under the sky map.
- ``textures``: checker, image and normal-mapped surfaces in a lit box.
- ``emissive-sphere``: a single emissive sphere resting on a diffuse floor
  under a black sky, the reference scene for radiance checks.

Example:
    >>> from pathtracer.scene.scenes import create_scene
    >>> scene = create_scene("cornell")
    >>> scene.get_quad_count()
    18
"""

from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

import numpy as np

from pathtracer.camera.thin_lens import ThinLensCamera
from pathtracer.scene.manager import SceneManager
from pathtracer.scene.transform import compose

# =============================================================================
# Procedural Images
# =============================================================================


def make_sky_map(
    width: int = 256,
    height: int = 128,
    sun_direction: tuple[float, float, float] = (0.4, 0.6, 0.3),
    sun_radiance: float = 200.0,
) -> np.ndarray:
    """Lat-long sky: blue gradient above the horizon, grey ground below and a small sun.

    Returns:
        (height, width, 3) float32 linear radiance, row 0 at the zenith.
    """
    v = (np.arange(height) + 0.5) / height
    u = (np.arange(width) + 0.5) / width
    theta = np.pi * v[:, None]
    phi = 2.0 * np.pi * u[None, :] - np.pi
    d = np.stack(
        [np.sin(theta) * np.cos(phi), np.broadcast_to(np.cos(theta), phi.shape), np.sin(theta) * np.sin(phi)],
        axis=-1,
    )

    up = np.clip(d[..., 1], 0.0, 1.0)[..., None]
    horizon = np.array([0.9, 0.9, 1.0])
    zenith = np.array([0.25, 0.45, 0.9])
    ground = np.array([0.25, 0.22, 0.2])
    sky = horizon * (1.0 - up) + zenith * up
    pixels = np.where(d[..., 1:2] >= 0.0, sky, ground)

    sun = np.asarray(sun_direction, dtype=np.float64)
    sun /= np.linalg.norm(sun)
    cos_sun = d @ sun
    pixels = pixels + sun_radiance * (cos_sun > np.cos(np.radians(2.0)))[..., None] * np.array([1.0, 0.95, 0.85])
    return pixels.astype(np.float32)


def make_brick_texture(width: int = 128, height: int = 128, rows: int = 8) -> tuple[np.ndarray, np.ndarray]:
    """Brick pattern albedo and matching tangent-space normal map.

    Returns:
        A tuple (albedo, normal_map), both (height, width, 3) float32. The
        normal map stores ``n * 0.5 + 0.5`` with +z out of the surface.
    """
    y = (np.arange(height) + 0.5) / height * rows
    x = (np.arange(width) + 0.5) / width * (rows / 2)
    row = np.floor(y)[:, None]
    xs = x[None, :] + 0.5 * (row % 2)
    fx = xs - np.floor(xs)
    fy = np.broadcast_to((y - np.floor(y))[:, None], fx.shape)

    mortar_width = 0.06
    mortar = (fx < mortar_width) | (fy < mortar_width * 2)
    brick = np.array([0.55, 0.2, 0.12])
    grout = np.array([0.7, 0.7, 0.68])
    albedo = np.where(mortar[..., None], grout, brick)

    # Bevel the brick edges: the height falls off toward the mortar lines
    bump = np.minimum(np.minimum(fx, 1.0 - fx) * 4.0, np.minimum(fy, 1.0 - fy) * 2.0)
    bump = np.clip(bump, 0.0, 1.0)
    dy, dx = np.gradient(bump)
    n = np.stack([-dx * 4.0, -dy * 4.0, np.ones_like(bump)], axis=-1)
    n /= np.linalg.norm(n, axis=-1, keepdims=True)
    return albedo.astype(np.float32), (n * 0.5 + 0.5).astype(np.float32)


# =============================================================================
# Scenes
# =============================================================================


def create_balls_scene(seed: int = 7, grid: int = 11) -> SceneManager:
    """Random spheres around a glass, a diffuse and a metal sphere."""
    rng = np.random.default_rng(seed)
    scene = SceneManager()

    checker = scene.add_checker_texture((0.2, 0.3, 0.1), (0.9, 0.9, 0.9), scale=0.32, name="ground_checker")
    scene.add_principled_material(
        name="ground", base_color=(1.0, 1.0, 1.0), roughness=1.0, specular=0.0, base_color_texture=checker
    )
    scene.add_sphere((0.0, -1000.0, 0.0), 1000.0, "ground")

    scene.add_dielectric_material(1.5, name="glass")
    scene.add_lambertian_material((0.4, 0.2, 0.1), name="brown")
    scene.add_metal_material((0.7, 0.6, 0.5), 0.0, name="mirror")
    scene.add_sphere((0.0, 1.0, 0.0), 1.0, "glass")
    scene.add_sphere((-4.0, 1.0, 0.0), 1.0, "brown")
    scene.add_sphere((4.0, 1.0, 0.0), 1.0, "mirror")

    for a in range(-grid, grid):
        for b in range(-grid, grid):
            choose = rng.random()
            center = np.array([a + 0.9 * rng.random(), 0.2, b + 0.9 * rng.random()])
            if np.linalg.norm(center - np.array([4.0, 0.2, 0.0])) <= 0.9:
                continue
            if choose < 0.8:
                albedo = tuple(rng.random(3) * rng.random(3))
                mat = scene.add_lambertian_material(albedo)
                motion = (0.0, 0.5 * rng.random(), 0.0)
                scene.add_sphere(tuple(center), 0.2, mat, motion=motion)
            elif choose < 0.95:
                mat = scene.add_metal_material(tuple(rng.uniform(0.5, 1.0, 3)), 0.5 * rng.random())
                scene.add_sphere(tuple(center), 0.2, mat)
            else:
                scene.add_sphere(tuple(center), 0.2, "glass")

    scene.set_environment_color((0.7, 0.8, 1.0))
    scene.set_camera(
        ThinLensCamera(
            lookfrom=(13.0, 2.0, 3.0),
            lookat=(0.0, 0.0, 0.0),
            vfov=20.0,
            aspect_ratio=16.0 / 9.0,
            aperture=0.1,
            focus_distance=10.0,
        )
    )
    return scene


@dataclass
class CornellBoxParams:
    """Parameters of the Cornell box scene.

    Attributes:
        light_intensity: Radiance of the ceiling light.
        light_color: RGB color of the light.
        left_wall_color: Albedo of the wall at x = box_size.
        right_wall_color: Albedo of the wall at x = 0.
        white_color: Albedo of the floor, ceiling and back wall.
    """

    light_intensity: float = 15.0
    light_color: tuple[float, float, float] = (1.0, 1.0, 1.0)
    left_wall_color: tuple[float, float, float] = (0.12, 0.45, 0.15)
    right_wall_color: tuple[float, float, float] = (0.65, 0.05, 0.05)
    white_color: tuple[float, float, float] = (0.73, 0.73, 0.73)


BOX_SIZE = 555.0


def _add_cornell_walls(scene: SceneManager, params: CornellBoxParams, size: float = BOX_SIZE) -> None:
    green = scene.add_lambertian_material(params.left_wall_color, name="green")
    red = scene.add_lambertian_material(params.right_wall_color, name="red")
    white = scene.add_lambertian_material(params.white_color, name="white")
    emission = tuple(c * params.light_intensity for c in params.light_color)
    light = scene.add_emissive_material(emission, name="light")

    scene.add_quad((size, 0.0, 0.0), (0.0, size, 0.0), (0.0, 0.0, size), green)
    scene.add_quad((0.0, 0.0, 0.0), (0.0, size, 0.0), (0.0, 0.0, size), red)
    scene.add_quad((0.0, 0.0, 0.0), (size, 0.0, 0.0), (0.0, 0.0, size), white)
    scene.add_quad((size, size, size), (-size, 0.0, 0.0), (0.0, 0.0, -size), white)
    scene.add_quad((0.0, 0.0, size), (size, 0.0, 0.0), (0.0, size, 0.0), white)

    # u x v points down, into the box
    scene.add_quad((343.0, 554.0, 332.0), (-130.0, 0.0, 0.0), (0.0, 0.0, -105.0), light)


def _cornell_camera() -> ThinLensCamera:
    return ThinLensCamera(
        lookfrom=(278.0, 278.0, -800.0),
        lookat=(278.0, 278.0, 0.0),
        vfov=40.0,
        aspect_ratio=1.0,
    )


def create_cornell_box_scene(params: CornellBoxParams | None = None) -> SceneManager:
    """The Cornell box with a principled sphere and two rotated boxes."""
    if params is None:
        params = CornellBoxParams()
    scene = SceneManager()
    _add_cornell_walls(scene, params)

    scene.add_principled_material(
        name="coated",
        base_color=(1.0, 1.0, 1.0),
        roughness=0.05,
        specular=0.9,
        specular_tint=0.9,
        sheen=0.9,
        sheen_tint=0.9,
        clearcoat=0.9,
        clearcoat_gloss=0.9,
        spec_trans=0.9,
        ior=1.5,
    )
    scene.add_sphere((113.0, 170.0, 372.0), 135.0, "coated")

    scene.add_metal_material((1.0, 1.0, 1.0), 0.1, name="brushed")
    scene.add_box(
        (0.0, 0.0, 0.0),
        (165.0, 330.0, 165.0),
        "brushed",
        transform=compose(rotate=(0.0, 15.0, 0.0), translate=(265.0, 0.0, 295.0)),
    )
    scene.add_box(
        (0.0, 0.0, 0.0),
        (165.0, 165.0, 165.0),
        "white",
        transform=compose(rotate=(0.0, -18.0, 0.0), translate=(130.0, 0.0, 65.0)),
    )
    scene.set_camera(_cornell_camera())
    return scene


def create_environment_scene(map_width: int = 256) -> SceneManager:
    """A mirror sphere under a procedural sky and a rectangular light."""
    scene = SceneManager()
    scene.add_metal_material((1.0, 1.0, 1.0), 0.01, name="mirror")
    scene.add_sphere((4.0, 2.0, 0.0), 9.0, "mirror")
    scene.add_emissive_material((10.0, 10.0, 10.0), name="panel")
    # Faces down toward the sphere
    scene.add_quad((-2.0, 12.5, 0.0), (4.0, 0.0, 0.0), (0.0, 0.0, 2.0), "panel")

    scene.set_environment_map(make_sky_map(map_width, map_width // 2), intensity=1.0)
    scene.set_camera(
        ThinLensCamera(
            lookfrom=(0.0, 3.0, 17.0),
            lookat=(0.0, 2.0, 0.0),
            vfov=90.0,
            aspect_ratio=16.0 / 9.0,
            aperture=0.2,
            focus_distance=12.0,
        )
    )
    return scene


def create_bsdf_scene() -> SceneManager:
    """Three rows of five spheres: dielectric, metal and glass, roughness increasing to the right."""
    scene = SceneManager()
    rows = (
        ((0.65, 0.05, 0.05), {"metallic": 0.0}, 1.0),
        ((0.05, 0.65, 0.05), {"metallic": 1.0}, 1.0),
        ((0.25, 0.05, 0.65), {"spec_trans": 1.0}, 0.3),
    )
    for row, (color, lobe, roughness_scale) in enumerate(rows):
        for i in range(5):
            roughness = (0.1 + 0.2 * i) * roughness_scale
            mat = scene.add_principled_material(base_color=color, roughness=roughness, specular=0.5, **lobe)
            scene.add_sphere((-4.0 + i, 1.0 + row, -5.0), 0.5, mat)

    scene.set_environment_map(make_sky_map(256, 128))
    scene.set_camera(
        ThinLensCamera(
            lookfrom=(-2.0, 2.0, -1.0),
            lookat=(-2.0, 2.0, -1001.0),
            vfov=60.0,
            aspect_ratio=16.0 / 9.0,
        )
    )
    return scene


def create_textures_scene() -> SceneManager:
    """Checker, image and normal-mapped walls in a box lit from the ceiling."""
    scene = SceneManager()
    albedo, normals = make_brick_texture()
    bricks = scene.add_image_texture(albedo, name="bricks")
    bump = scene.add_image_texture(normals, name="bricks_normal")
    checker = scene.add_checker_texture((0.1, 0.1, 0.1), (0.9, 0.9, 0.9), scale=55.5, name="checker")

    params = CornellBoxParams(light_intensity=18.0, light_color=(1.0, 1.0, 0.8))
    scene.add_lambertian_material(params.white_color, name="white")
    emission = tuple(c * params.light_intensity for c in params.light_color)
    scene.add_emissive_material(emission, name="light")
    scene.add_principled_material(name="brick_flat", roughness=0.9, specular=0.2, base_color_texture=bricks)
    scene.add_principled_material(
        name="brick_bumped", roughness=0.9, specular=0.2, base_color_texture=bricks, normal_texture=bump
    )
    scene.add_principled_material(name="floor", roughness=0.3, base_color_texture=checker)

    size = BOX_SIZE
    scene.add_quad((size, 0.0, 0.0), (0.0, size, 0.0), (0.0, 0.0, size), "brick_flat")
    scene.add_quad((0.0, 0.0, 0.0), (0.0, size, 0.0), (0.0, 0.0, size), "brick_bumped")
    scene.add_quad((0.0, 0.0, 0.0), (size, 0.0, 0.0), (0.0, 0.0, size), "floor")
    scene.add_quad((size, size, size), (-size, 0.0, 0.0), (0.0, 0.0, -size), "white")
    scene.add_quad((0.0, 0.0, size), (size, 0.0, 0.0), (0.0, size, 0.0), "white")
    scene.add_quad((343.0, 554.0, 332.0), (-130.0, 0.0, 0.0), (0.0, 0.0, -105.0), "light")

    scene.add_metal_material((0.94, 0.94, 0.94), 0.1, name="steel")
    scene.add_box(
        (0.0, 0.0, 0.0),
        (165.0, 330.0, 165.0),
        "steel",
        transform=compose(rotate=(0.0, 15.0, 0.0), translate=(265.0, 0.0, 295.0)),
    )
    scene.add_dielectric_material(1.5, name="glass")
    scene.add_sphere((130.0, 100.0, 65.0), 100.0, "glass")
    scene.set_camera(_cornell_camera())
    return scene


def create_emissive_sphere_scene(
    emission: tuple[float, float, float] = (1.0, 1.0, 1.0),
    radius: float = 1.0,
    distance: float = 5.0,
    floor_albedo: tuple[float, float, float] | None = None,
) -> SceneManager:
    """One emissive sphere at the given distance from the camera on black.

    With ``floor_albedo`` the sphere rests on a large diffuse floor that it
    lights.
    """
    scene = SceneManager()
    scene.add_emissive_material(emission, name="glow")
    scene.add_sphere((0.0, 0.0, 0.0), radius, "glow")
    if floor_albedo is not None:
        scene.add_lambertian_material(floor_albedo, name="floor")
        half = 10.0 * distance
        scene.add_quad((-half, -radius, -half), (0.0, 0.0, 2.0 * half), (2.0 * half, 0.0, 0.0), "floor")
    scene.set_camera(
        ThinLensCamera(
            lookfrom=(0.0, 0.0, distance),
            lookat=(0.0, 0.0, 0.0),
            vfov=40.0,
            aspect_ratio=1.0,
        )
    )
    return scene


SCENES: dict[str, Callable[[], SceneManager]] = {
    "balls": create_balls_scene,
    "cornell": create_cornell_box_scene,
    "environment": create_environment_scene,
    "bsdf": create_bsdf_scene,
    "textures": create_textures_scene,
    "emissive-sphere": partial(create_emissive_sphere_scene, floor_albedo=(0.5, 0.5, 0.5)),
}

SCENE_NAMES = tuple(SCENES)


def create_scene(name: str) -> SceneManager:
    """Build a demonstration scene by name.

    Raises:
        ValueError: If the name is not one of SCENE_NAMES.
    """
    try:
        factory = SCENES[name]
    except KeyError:
        raise ValueError(f"Unknown scene '{name}' (expected one of: {', '.join(SCENE_NAMES)})") from None
    return factory()
