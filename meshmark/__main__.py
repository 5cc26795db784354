import argparse

from . import console


def main(argv=None):
    parser = argparse.ArgumentParser(prog='meshmark', description="Fragile watermarking of GLB meshes")
    parser.add_argument('--viewer', action='store_true', help="open the OpenGL viewer instead of the console loop")
    parser.add_argument('model', nargs='?', help="GLB file to open in the viewer")
    args = parser.parse_args(argv)

    if args.viewer:
        from . import viewer
        viewer.main([args.model] if args.model else [])
    else:
        console.main()


if __name__ == '__main__':
    main()
