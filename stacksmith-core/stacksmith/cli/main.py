def main():
    # config profiles are the first thing that need to be loaded (especially before stacksmith.config!)
    from .profiles import set_profile_from_sys_argv

    set_profile_from_sys_argv()

    from .smith import smith

    smith()


if __name__ == "__main__":
    main()
