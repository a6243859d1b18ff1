from platform_bootstrap.main import main

raise SystemExit(main())
