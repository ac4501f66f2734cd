import isoinstall

if __name__ == '__main__':
	isoinstall.run_as_a_module()
