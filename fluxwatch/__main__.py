from fluxwatch.main import main

raise SystemExit(main())
