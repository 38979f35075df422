from awsrender.cli import main

main()
