# viewer.py
import sys
import tkinter as tk
from tkinter import filedialog, simpledialog, messagebox

import numpy as np
import pygame
from pygame.locals import *
from OpenGL.GL import *
from OpenGL.GLU import *

from .errors import WatermarkError
from .glb import GltfModel
from .watermark import (
    KeySpec,
    SIZING_ATTRIBUTE,
    find_max_vertices_mesh,
    carrier_vertex_indices,
    mark_file,
    verify_file,
)
from .console import describe_error

# -------------------------
# Configurable limits
# -------------------------
DEFAULT_WINDOW = (1024, 768)
FPS_FONT_SIZE = 20
POINT_SIZE = 2.0
KEYED_POINT_SIZE = 5.0


def normalize_vertices_array(verts: np.ndarray):
    """
    Center and scale to unit bounding box. Only a visual transform.
    verts: (N,3) float32 array of vertex positions
    """
    if verts.size == 0:
        return verts
    mins = verts.min(axis=0)
    maxs = verts.max(axis=0)
    center = (mins + maxs) / 2.0
    verts = verts - center
    scale = (maxs - mins).max()
    if scale == 0:
        return verts.astype(np.float32)
    verts = verts / scale
    return verts.astype(np.float32)


# -------------------------
# What the viewer shows: selected mesh positions + keyed carrier vertices
# -------------------------
class MeshView:
    def __init__(self, filename: str):
        self.filename = filename
        self.model = GltfModel.load(filename)
        self.mesh_id, self.element_count = find_max_vertices_mesh(self.model)

        primitives = self.model.meshes[self.mesh_id].get('primitives', []) if self.model.meshes else []
        if not primitives or SIZING_ATTRIBUTE not in primitives[0].get('attributes', {}):
            raise WatermarkError(f"No {SIZING_ATTRIBUTE} attribute to display in {filename}")
        positions = self.model.positions(primitives[0]['attributes'][SIZING_ATTRIBUTE])
        self.positions = normalize_vertices_array(np.ascontiguousarray(positions[:, :3]))
        self.vertex_count = self.positions.shape[0]
        self.keyed_positions = None

        print(f"[Viewer] Mesh {self.mesh_id}: vertices={self.vertex_count:,}, elements={self.element_count:,}")

    def apply_key(self, key: KeySpec):
        indices = carrier_vertex_indices(self.model, key)
        indices = indices[indices < self.vertex_count]
        self.keyed_positions = np.ascontiguousarray(self.positions[indices])
        print(f"[Viewer] Keyed carrier vertices: {len(indices)}")


# -------------------------
# Viewport / init
# -------------------------
def resize_viewport(width, height):
    if height == 0:
        height = 1
    glViewport(0, 0, width, height)
    glMatrixMode(GL_PROJECTION)
    glLoadIdentity()
    gluPerspective(45.0, float(width)/float(height), 0.01, 100.0)
    glMatrixMode(GL_MODELVIEW)
    glLoadIdentity()


def init_display(width, height):
    pygame.init()
    if not pygame.font.get_init():
        pygame.font.init()
    pygame.display.set_mode((width, height), DOUBLEBUF | OPENGL | RESIZABLE)
    pygame.display.set_caption("meshmark")
    glEnable(GL_DEPTH_TEST)
    glClearColor(0.12, 0.12, 0.14, 1.0)
    resize_viewport(width, height)


# -------------------------
# Viewer Application
# -------------------------
class Viewer:
    def __init__(self, width=DEFAULT_WINDOW[0], height=DEFAULT_WINDOW[1]):
        self.width = width
        self.height = height
        init_display(self.width, self.height)

        self.zoom_z = -2.5
        self.rotation_matrix = glGetFloatv(GL_MODELVIEW_MATRIX)
        self.is_dragging = False
        self.last_x = 0
        self.last_y = 0

        self.view = None
        self.key = None
        self.show_keyed = True
        self.status = "O: open  K: key  M: mark  V: verify  H: highlight"

        self.clock = pygame.time.Clock()
        self.stats_font = pygame.font.Font(None, FPS_FONT_SIZE)

    # -------------------------------------------------
    # Tk dialogs
    # -------------------------------------------------
    def _tk_text_input(self, title, prompt, initial=""):
        """Blocking Tkinter dialog to get text input."""
        root = tk.Tk()
        root.withdraw()
        try:
            value = simpledialog.askstring(title, prompt, initialvalue=initial, parent=root)
        finally:
            root.destroy()
        return value

    def _tk_info(self, title, message):
        root = tk.Tk()
        root.withdraw()
        try:
            messagebox.showinfo(title, message, parent=root)
        finally:
            root.destroy()

    def open_model_dialog(self):
        root = tk.Tk()
        root.withdraw()
        filename = filedialog.askopenfilename(
            title="Open GLB Model",
            filetypes=[("Binary glTF", "*.glb"), ("All files", "*.*")]
        )
        root.destroy()
        if not filename:
            return
        self.load(filename)

    def load(self, filename):
        try:
            self.view = MeshView(filename)
            if self.key:
                self.view.apply_key(self.key)
            self.status = f"Loaded {filename}"
        except WatermarkError as e:
            self.view = None
            self._tk_info("Open", describe_error(e))

    def key_dialog(self):
        key_string = self._tk_text_input("Steganography Key", "Entry steganography key:")
        if not key_string:
            return
        try:
            self.key = KeySpec.parse(key_string)
            if self.view:
                self.view.apply_key(self.key)
            self.status = f"Key set: density={self.key.bit_density}, attr={self.key.attribute}"
        except WatermarkError as e:
            self._tk_info("Key", describe_error(e))

    def _require(self, title):
        if not self.view:
            self._tk_info(title, "No model loaded.")
            return False
        if not self.key:
            self._tk_info(title, "No key entered (press K).")
            return False
        return True

    def mark(self):
        if not self._require("Mark"):
            return
        try:
            output = mark_file(self.view.filename, self.key)
        except WatermarkError as e:
            self._tk_info("Mark", describe_error(e))
            return
        self.load(output)
        self._tk_info("Mark", f"Model marked!\n{output}")

    def verify(self):
        if not self._require("Verify"):
            return
        try:
            result = verify_file(self.view.filename, self.key)
        except WatermarkError as e:
            self._tk_info("Verify", describe_error(e))
            return
        self.status = "Verification Confirmed" if result else "Watermark violate!"
        self._tk_info("Verify", self.status)

    # -------------------------------------------------
    # Events
    # -------------------------------------------------
    def handle_events(self):
        for event in pygame.event.get():
            if event.type == QUIT or (event.type == KEYDOWN and event.key == pygame.K_ESCAPE):
                return False

            elif event.type == VIDEORESIZE:
                self.width, self.height = event.size
                resize_viewport(self.width, self.height)

            elif event.type == MOUSEBUTTONDOWN:
                if event.button == 1:
                    self.is_dragging = True
                    self.last_x, self.last_y = event.pos
                elif event.button == 4:
                    self.zoom_z *= 0.9
                elif event.button == 5:
                    self.zoom_z *= 1.1

            elif event.type == MOUSEBUTTONUP:
                if event.button == 1:
                    self.is_dragging = False

            elif event.type == MOUSEMOTION and self.is_dragging:
                dx = event.pos[0] - self.last_x
                dy = event.pos[1] - self.last_y
                glLoadIdentity()
                glRotatef(dy * 0.5, 1, 0, 0)
                glRotatef(dx * 0.5, 0, 1, 0)
                glMultMatrixf(self.rotation_matrix)
                self.rotation_matrix = glGetFloatv(GL_MODELVIEW_MATRIX)
                self.last_x, self.last_y = event.pos

            elif event.type == KEYDOWN:
                if event.key == pygame.K_o:
                    self.open_model_dialog()
                elif event.key == pygame.K_k:
                    self.key_dialog()
                elif event.key == pygame.K_m:
                    self.mark()
                elif event.key == pygame.K_v:
                    self.verify()
                elif event.key == pygame.K_h:
                    self.show_keyed = not self.show_keyed
                    print(f"[Viewer] Keyed-vertex display: {'ON' if self.show_keyed else 'OFF'}")
        return True

    # -------------------------------------------------
    # Drawing
    # -------------------------------------------------
    def draw_points(self, points, size, color):
        glPushAttrib(GL_POINT_BIT | GL_CURRENT_BIT)
        glPointSize(size)
        glColor3f(*color)
        glEnableClientState(GL_VERTEX_ARRAY)
        glVertexPointer(3, GL_FLOAT, 0, points)
        glDrawArrays(GL_POINTS, 0, points.shape[0])
        glDisableClientState(GL_VERTEX_ARRAY)
        glPopAttrib()

    def draw_stats_overlay(self):
        """FPS, vertex count and status line at top-left."""
        lines = [f"FPS: {self.clock.get_fps():.1f}"]
        if self.view:
            lines.append(f"Vertices: {self.view.vertex_count:,}")
        lines.append(self.status)

        glPushAttrib(GL_DEPTH_BUFFER_BIT | GL_CURRENT_BIT)
        glDisable(GL_DEPTH_TEST)
        glEnable(GL_BLEND)
        glBlendFunc(GL_SRC_ALPHA, GL_ONE_MINUS_SRC_ALPHA)

        margin = 10
        y_offset = self.height - margin
        for line in lines:
            text_surface = self.stats_font.render(line, True, (255, 255, 255, 255))
            text_data = pygame.image.tostring(text_surface, "RGBA", True)
            y_offset -= text_surface.get_height()
            glWindowPos2f(margin, y_offset)
            glDrawPixels(text_surface.get_width(), text_surface.get_height(),
                         GL_RGBA, GL_UNSIGNED_BYTE, text_data)
            y_offset -= 2

        glPopAttrib()

    def draw(self):
        glClear(GL_COLOR_BUFFER_BIT | GL_DEPTH_BUFFER_BIT)
        glLoadIdentity()
        glTranslatef(0.0, 0.0, self.zoom_z)
        glMultMatrixf(self.rotation_matrix)

        if self.view and self.view.vertex_count:
            self.draw_points(self.view.positions, POINT_SIZE, (0.75, 0.75, 0.75))
            if self.show_keyed and self.view.keyed_positions is not None:
                self.draw_points(self.view.keyed_positions, KEYED_POINT_SIZE, (1.0, 0.0, 0.0))

        self.draw_stats_overlay()
        pygame.display.flip()

    def main_loop(self):
        running = True
        while running:
            running = self.handle_events()
            self.draw()
            self.clock.tick(60)
        pygame.quit()


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    viewer = Viewer()
    if argv:
        viewer.load(argv[0])
    viewer.main_loop()


if __name__ == "__main__":
    main()
